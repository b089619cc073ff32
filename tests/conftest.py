"""Shared fixtures: fake engines wired into a real registry and a temp cache store."""

import pytest

from app.batching.resources import FixedBatchSizePolicy
from app.encoders.embeddings import EmbeddingsService
from app.encoders.engine_registry import EngineRegistry
from app.pipelines.executor import AsyncCaller
from app.storage.cache_store import EmbeddingsCacheStore
from tests.helpers import FakeEmbeddingEngine, FakeLoader, no_wait_retries


@pytest.fixture
def engine():
    return FakeEmbeddingEngine()


@pytest.fixture
def loader(engine):
    return FakeLoader(engine)


@pytest.fixture
def registry(loader):
    return EngineRegistry(loader)


@pytest.fixture
def cache_store(tmp_path):
    return EmbeddingsCacheStore(tmp_path / "cache")


@pytest.fixture
def make_service(registry, cache_store):
    def factory(batch_size: int = 3, max_concurrency=None, max_retries: int = 3, **kwargs):
        return EmbeddingsService(
            registry=registry,
            cache_store=cache_store,
            caller=AsyncCaller(max_concurrency=max_concurrency, retry_config=no_wait_retries(max_retries)),
            batch_size_policy=FixedBatchSizePolicy(batch_size),
            **kwargs
        )
    return factory
