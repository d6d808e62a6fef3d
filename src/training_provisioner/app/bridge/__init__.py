"""Projection of ready requests onto platform-owned machine records."""
