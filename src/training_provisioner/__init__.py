"""Training VM provisioner: static pool + elastic fallback reconciliation."""
