"""Broker core and background operations."""
