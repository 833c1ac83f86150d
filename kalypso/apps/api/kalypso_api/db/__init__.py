"""Persisted mirror of Bridge state."""
