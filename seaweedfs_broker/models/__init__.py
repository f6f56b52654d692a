"""Broker, instance and binding data models."""
