"""API middleware and request guards."""
