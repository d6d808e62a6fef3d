"""Request lifecycle reconciliation."""
