"""Intake of new provisioning requests from platform sessions."""
