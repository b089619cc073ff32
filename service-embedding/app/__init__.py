"""Embedding service package.

Layout:
- ``api``: FastAPI route handlers and request/response models.
- ``encoders``: embedding pipeline, reranker and the engine registry.
- ``pipelines``: the bounded, retrying ``AsyncCaller``.
- ``storage``: on-disk vector cache and scratch files.
- ``batching``: device detection and batch sizing.
- ``runtime``: service-local metrics.
- ``utils``: token estimation.

Import convenience:
- from app.encoders.embeddings import EmbeddingsService
"""
