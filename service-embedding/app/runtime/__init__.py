"""Runtime helpers (metrics facade) for the embedding service."""
