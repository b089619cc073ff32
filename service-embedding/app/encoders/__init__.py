"""Embedding encoders and managers.

- ``embeddings``: ``EmbeddingsService``, the cache-aware embedding pipeline.
- ``reranker``: ``RerankerService`` for cross-encoder scoring.
- ``engine_registry``: loads and caches inference engines per model.

Heavy ML imports stay inside the loader so importing this package is cheap.
"""
