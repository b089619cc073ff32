"""Fakes and helpers shared by the test suite."""

import threading
import time
from types import SimpleNamespace
from typing import Dict, List, Optional, Set

import numpy as np
import torch

from app.encoders.engine_registry import TEXT_RANKING, EngineKey
from app.pipelines.executor import RetryConfig
from app.storage.cache_store import EmbeddingsCacheStore


def fake_vector(text: str) -> List[float]:
    """Deterministic 3-d vector for a text."""
    return [float(len(text)), float(sum(map(ord, text)) % 1000), 1.0]


class FakeEmbeddingEngine:
    """Stands in for ``SentenceTransformer``; records every batch it sees."""

    def __init__(
        self,
        delays: Optional[Dict[str, float]] = None,
        fail_times: int = 0,
        drop_last: bool = False,
        fail_texts: Optional[Set[str]] = None
    ):
        self.calls: List[List[str]] = []
        self.completed: List[List[str]] = []
        self.delays = delays or {}
        self.fail_times = fail_times
        self.drop_last = drop_last
        self.fail_texts = set(fail_texts or ())
        self._lock = threading.Lock()

    def encode(self, texts, batch_size=32, normalize_embeddings=False, convert_to_numpy=True, show_progress_bar=False):
        with self._lock:
            self.calls.append(list(texts))
            if self.fail_times:
                self.fail_times -= 1
                raise RuntimeError("CUDA out of memory")
        for text in texts:
            time.sleep(self.delays.get(text, 0))
        if self.fail_texts.intersection(texts):
            raise RuntimeError("CUDA out of memory")
        vectors = [fake_vector(text) for text in texts]
        with self._lock:
            self.completed.append(list(texts))
        if self.drop_last:
            vectors = vectors[:-1]
        return np.array(vectors, dtype=np.float64)


class FakeTokenizer:
    def __call__(self, queries, documents, padding=True, truncation=True, return_tensors="pt"):
        return {"input_ids": torch.tensor([[float(len(doc))] for doc in documents])}


class FakeCrossEncoderModel:
    device = torch.device("cpu")

    def __call__(self, input_ids):
        return SimpleNamespace(logits=input_ids - 5.0)


class FakeCrossEncoder:
    """Scores a pair by document length: ``sigmoid(len(doc) - 5)``."""

    def __init__(self):
        self.tokenizer = FakeTokenizer()
        self.model = FakeCrossEncoderModel()


class FakeLoader:
    def __init__(self, embedding_engine: FakeEmbeddingEngine):
        self.embedding_engine = embedding_engine
        self.loaded: List[EngineKey] = []

    def __call__(self, key: EngineKey):
        self.loaded.append(key)
        if key.task == TEXT_RANKING:
            return FakeCrossEncoder()
        return self.embedding_engine


def no_wait_retries(max_retries: int = 3) -> RetryConfig:
    return RetryConfig(max_retries=max_retries, base_delay=0, min_delay=0, jitter=False)


def leftover_scratch_files(store: EmbeddingsCacheStore) -> List[str]:
    if not store.root.exists():
        return []
    return [str(p) for p in store.root.rglob("*") if p.suffix in (".tmp", ".ckpt")]
