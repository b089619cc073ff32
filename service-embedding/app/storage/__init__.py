"""Persistent storage for the embedding service.

- ``cache_store``: content-addressed vector cache and per-call scratch files.
"""
