"""Clients for the director, IAM, S3 and CredHub APIs."""
