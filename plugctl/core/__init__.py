"""Core services: cache, registry, pins and the install orchestrator."""
