"""Expiry, garbage collection and loop supervision."""
