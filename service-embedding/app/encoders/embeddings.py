"""Embedding pipeline with an on-disk vector cache.

``EmbeddingsService.embed_documents`` always runs inference: documents are
split into memory-bounded batches, every batch is submitted to the shared
``AsyncCaller``, and batch output is streamed into a per-call scratch file as
one JSON array (in batch order, whatever order the batches finish in). The
file is then read back, flattened and deleted.

``cache_embed_documents`` looks every document up in the cache first and only
sends the misses through ``embed_documents``, writing the new vectors back.
"""

import asyncio
import json
import time
from typing import Any, Callable, Dict, List, Optional, Sequence
import structlog

from libs.common.logging import log_performance
from libs.common.metrics import MetricsCollector
from ..batching.resources import MemoryBatchSizePolicy, chunk_list
from ..pipelines.executor import AsyncCaller
from ..storage.cache_store import EmbeddingsCacheStore, ScratchHandle, Vector
from .engine_registry import FEATURE_EXTRACTION, ConfigurationError, EngineRegistry, InferenceError

logger = structlog.get_logger("embedding_service.embeddings")


class PipelineOptions:
    """Options forwarded to the feature-extraction engine."""

    def __init__(self, pooling: Optional[str] = "mean", normalize: bool = True):
        self.pooling = pooling
        self.normalize = normalize


def encode_batch(engine: Any, texts: List[str], options: PipelineOptions) -> List[Vector]:
    """Run one forward pass and return plain float lists."""
    output = engine.encode(
        texts,
        batch_size=len(texts),
        normalize_embeddings=options.normalize,
        convert_to_numpy=True,
        show_progress_bar=False,
    )
    if output is None:
        raise InferenceError("Engine returned no output")
    return output.tolist()


class _OrderedAppender:
    """Writes per-batch JSON fragments to a scratch file in batch order.

    Fragments arriving early are held until every earlier batch has been
    written, so the file always reads ``[b0,b1,...,bn]``.
    """

    def __init__(self, store: EmbeddingsCacheStore, handle: ScratchHandle, total: int):
        self.store = store
        self.handle = handle
        self.total = total
        self.next_index = 0
        self.pending: Dict[int, bytes] = {}
        self._lock = asyncio.Lock()

    async def append(self, index: int, fragment: bytes) -> None:
        async with self._lock:
            self.pending[index] = fragment
            while self.next_index in self.pending:
                data = self.pending.pop(self.next_index)
                prefix = b"[" if self.next_index == 0 else b","
                suffix = b"]" if self.next_index == self.total - 1 else b""
                await self.store.write(self.handle, prefix + data + suffix)
                self.next_index += 1


class EmbeddingsService:
    """Embeds documents, optionally through the vector cache.

    Parameters
    - registry: ``EngineRegistry`` providing the feature-extraction engine
    - cache_store: ``EmbeddingsCacheStore`` for vectors and scratch files
    - caller: ``AsyncCaller`` shared by every call on this service
    - model: Model identifier; required before the first inference
    - strip_new_lines: Replace ``\\n`` with spaces before inference
    - options: ``PipelineOptions`` (pooling, normalization)
    - batch_size_policy: Zero-argument callable returning the batch size
    - metrics: Optional ``MetricsCollector`` for cache hit/miss counts
    """

    def __init__(
        self,
        registry: EngineRegistry,
        cache_store: EmbeddingsCacheStore,
        caller: Optional[AsyncCaller] = None,
        model: Optional[str] = "sentence-transformers/all-MiniLM-L6-v2",
        strip_new_lines: bool = True,
        options: Optional[PipelineOptions] = None,
        batch_size_policy: Optional[Callable[[], int]] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.registry = registry
        self.cache_store = cache_store
        self.caller = caller or AsyncCaller()
        self.model = model
        self.strip_new_lines = strip_new_lines
        self.options = options or PipelineOptions()
        self.batch_size_policy = batch_size_policy or MemoryBatchSizePolicy()
        self.metrics = metrics

    async def embed_query(self, query: str) -> Vector:
        embeddings = await self.embed_documents([query])
        return embeddings[0] if embeddings else []

    async def cache_embed_query(self, query: str) -> Vector:
        embeddings = await self.cache_embed_documents([query])
        return embeddings[0] if embeddings else []

    async def cache_embed_documents(self, documents: Sequence[str]) -> List[Vector]:
        """Embed ``documents``, reusing cached vectors where available.

        Cache keys are the raw document texts. Only vectors computed in this
        call are written back.
        """
        documents = list(documents)
        vectors: List[Optional[Vector]] = await self.cache_store.mget(documents)
        missing_indices = [i for i, vector in enumerate(vectors) if vector is None]

        hits = len(documents) - len(missing_indices)
        if self.metrics is not None:
            self.metrics.record_cache_hit("embeddings", hits)
            self.metrics.record_cache_miss("embeddings", len(missing_indices))
        logger.debug("Cache lookup completed", total=len(documents), hits=hits, misses=len(missing_indices))

        if missing_indices:
            missing_docs = [documents[i] for i in missing_indices]
            missing_vectors = await self.embed_documents(missing_docs)

            await self.cache_store.mset(
                [(documents[idx], missing_vectors[i]) for i, idx in enumerate(missing_indices)]
            )
            for i, idx in enumerate(missing_indices):
                vectors[idx] = missing_vectors[i]

        return vectors

    async def embed_documents(self, documents: Sequence[str]) -> List[Vector]:
        """Embed ``documents`` without consulting the cache.

        Raises the inference failure once the executor gives up; no partial
        result is returned and the scratch file is removed either way.
        """
        if not self.model:
            raise ConfigurationError("Embedding model identifier must be set")
        if not documents:
            return []

        start_time = time.time()
        texts = [text.replace("\n", " ") for text in documents] if self.strip_new_lines else list(documents)
        batches = chunk_list(texts, self.batch_size_policy())

        handle = await self.cache_store.open_scratch()
        try:
            appender = _OrderedAppender(self.cache_store, handle, len(batches))
            tasks = [
                asyncio.ensure_future(self.caller.call(
                    self._batch_task(index, batch, appender, handle),
                    operation_name=f"embed_batch_{index}"
                ))
                for index, batch in enumerate(batches)
            ]
            try:
                await asyncio.gather(*tasks)
            except BaseException:
                # Stop sibling batches before the scratch file goes away.
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
            await self.cache_store.close(handle)

            embeddings: List[List[Vector]] = json.loads(await self.cache_store.read_all(handle.path))
        finally:
            await self.cache_store.close(handle)
            await self.cache_store.remove(handle.path)
            await self.cache_store.remove(handle.checkpoint_path)

        vectors = [vector for batch in embeddings for vector in batch]
        log_performance(
            "embed_documents",
            (time.time() - start_time) * 1000,
            model_name=self.model,
            documents=len(texts),
            batches=len(batches)
        )
        return vectors

    def _batch_task(
        self,
        index: int,
        batch: List[str],
        appender: _OrderedAppender,
        handle: ScratchHandle
    ) -> Callable[[], Any]:
        async def run() -> None:
            engine = await self.registry.get(FEATURE_EXTRACTION, self.model, self.options.pooling)
            output = await asyncio.to_thread(encode_batch, engine, batch, self.options)
            if len(output) != len(batch):
                raise InferenceError(
                    f"Engine returned {len(output)} vectors for a batch of {len(batch)}"
                )

            content = json.dumps(output).encode("utf-8")
            await self.cache_store.store_checkpoint(handle, content)
            await appender.append(index, content)

        return run
