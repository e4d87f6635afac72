"""Shared utilities for plugctl."""
