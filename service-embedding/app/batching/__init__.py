"""Batching components for the embedding service.

Helpers controlling how inputs are grouped and which device runs inference.

Key pieces
- ``resources``: device detection, memory-derived batch sizing policies and
  list chunking.
"""
