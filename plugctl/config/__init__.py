"""Persisted document schemas and settings loading."""
