"""plugctl - local plugin package manager with a versioned artifact cache."""

__version__ = "0.4.0"
