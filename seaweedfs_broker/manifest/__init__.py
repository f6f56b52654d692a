"""Deployment manifest generation."""
