"""Persistence layer for a deployment-distribution service."""
