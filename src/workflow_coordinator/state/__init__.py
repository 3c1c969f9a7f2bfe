"""Persisted workflow state."""
