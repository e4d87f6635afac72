"""Command line interface for plugctl."""
