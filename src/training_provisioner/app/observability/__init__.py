"""Logging and metrics for the provisioner service."""
