"""Registry of loaded inference engines.

Engines are loaded once per ``EngineKey`` and never mutated afterwards, so
requests for different models run side by side without touching each other's
state.
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, NamedTuple, Optional
import structlog

logger = structlog.get_logger("embedding_service.engine_registry")

FEATURE_EXTRACTION = "feature-extraction"
TEXT_RANKING = "text-ranking"


class ConfigurationError(ValueError):
    """Raised when an engine is requested without a usable task or model id."""


class InferenceError(RuntimeError):
    """Raised when an engine returns no output or output of the wrong shape."""


class EngineKey(NamedTuple):
    task: str
    model_id: str
    pooling: Optional[str] = None


EngineLoader = Callable[[EngineKey], Any]


def load_sentence_transformer(key: EngineKey, device: str = "cpu") -> Any:
    """Load a bi-encoder or cross-encoder for ``key``.

    For feature extraction the model's pooling layer is replaced when the key
    asks for a specific pooling mode.
    """
    from sentence_transformers import CrossEncoder, SentenceTransformer, models

    if key.task == TEXT_RANKING:
        return CrossEncoder(key.model_id, device=device)

    model = SentenceTransformer(key.model_id, device=device)
    if key.pooling:
        for index, module in enumerate(model):
            if isinstance(module, models.Pooling):
                model[index] = models.Pooling(
                    module.get_sentence_embedding_dimension(),
                    pooling_mode=key.pooling,
                )
                break
    return model


class EngineRegistry:
    """Loads and caches engines keyed by ``(task, model_id, pooling)``.

    Parameters
    - loader: Callable building an engine from an ``EngineKey``; runs in a
      worker thread
    """

    def __init__(self, loader: EngineLoader):
        self.loader = loader
        self.engines: Dict[EngineKey, Any] = {}
        self.engine_info: Dict[EngineKey, Dict[str, Any]] = {}
        self._locks: Dict[EngineKey, asyncio.Lock] = {}

    async def get(self, task: str, model_id: Optional[str], pooling: Optional[str] = None) -> Any:
        """Return the engine for the key, loading it on first use."""
        if not task:
            raise ConfigurationError("Engine task must be set")
        if not model_id:
            raise ConfigurationError(f"Model identifier must be set for task {task!r}")

        key = EngineKey(task, model_id, pooling)
        engine = self.engines.get(key)
        if engine is not None:
            return engine

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            engine = self.engines.get(key)
            if engine is None:
                start_time = time.time()
                try:
                    engine = await asyncio.to_thread(self.loader, key)
                except Exception as e:
                    logger.error("Failed to load model", task=task, model_id=model_id, error=str(e))
                    raise
                self.engines[key] = engine
                self.engine_info[key] = {
                    "task": task,
                    "name": model_id,
                    "pooling": pooling,
                    "loaded_at": time.time(),
                }
                logger.info(
                    "Loaded model",
                    task=task,
                    model_id=model_id,
                    pooling=pooling,
                    load_seconds=round(time.time() - start_time, 3)
                )
        return engine

    def list_models(self) -> List[Dict[str, Any]]:
        return list(self.engine_info.values())
