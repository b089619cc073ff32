"""API subpackage for the embedding service.

Contains the FastAPI router exposing:
- Embeddings with and without the cache (``/v1/embeddings``, ``/v1/embeddings/cache``)
- Reranking (``/v1/reranker``)
- Health (``/health``)
"""
