"""Artifact sources that plugins are installed from."""
