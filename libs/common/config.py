"""Configuration management for the embedding service.

This module centralizes environment-driven configuration. It builds on
``pydantic_settings.BaseSettings`` so configuration can be provided via
environment variables, ``.env`` files, or defaults.

Highlights
- Strongly‑typed settings with sensible defaults
- One place to discover commonly used environment variables
- Service‑specific subclasses keep concerns clear

Usage
- Inject the config in your service entrypoint: ``config = EmbeddingConfig()``
- Or select dynamically: ``config = get_config("embedding")``
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class for all services.

    Parameters are read from the process environment with the given names.
    Defaults keep local development convenient while still being explicit.

    Notes
    - Add new shared settings here so downstream services inherit them.
    - Prefer ``Field(..., validation_alias="NAME")`` over reading ``os.environ`` directly.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Environment
    ml_env: str = Field(default="local", validation_alias="ML_ENV")

    # Logging
    ml_log_level: str = Field(default="INFO", validation_alias="ML_LOG_LEVEL")
    ml_log_format: str = Field(default="json", validation_alias="ML_LOG_FORMAT")

    # Performance
    ml_gpu_preference: str = Field(default="auto", validation_alias="ML_GPU_PREFERENCE")


class EmbeddingConfig(BaseConfig):
    """Configuration for the embedding service.

    Covers model selection, the on-disk cache root, executor limits and the
    defaults applied to embedding and reranking requests.

    ``ml_max_concurrency`` defaults to unbounded. Set it to cap how many
    inference batches (across all requests) hold memory at the same time.
    """

    ml_embedding_port: int = Field(default=9006, validation_alias="ML_EMBEDDING_PORT")
    ml_embedding_model: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2", validation_alias="ML_EMBEDDING_MODEL"
    )
    ml_reranker_model: str = Field(
        default="mixedbread-ai/mxbai-rerank-xsmall-v1", validation_alias="ML_RERANKER_MODEL"
    )

    # Cache
    ml_cache_root: str = Field(default=".cache", validation_alias="ML_CACHE_ROOT")

    # Executor
    ml_max_concurrency: Optional[int] = Field(default=None, validation_alias="ML_MAX_CONCURRENCY")
    ml_max_retries: int = Field(default=3, validation_alias="ML_MAX_RETRIES")
    ml_retry_base_delay: float = Field(default=1.0, validation_alias="ML_RETRY_BASE_DELAY")
    ml_retry_max_delay: float = Field(default=30.0, validation_alias="ML_RETRY_MAX_DELAY")

    # Embedding pipeline
    ml_strip_new_lines: bool = Field(default=True, validation_alias="ML_STRIP_NEW_LINES")
    ml_pooling: str = Field(default="mean", validation_alias="ML_POOLING")
    ml_normalize: bool = Field(default=True, validation_alias="ML_NORMALIZE")
    ml_embedding_batch_size: Optional[int] = Field(default=None, validation_alias="ML_EMBEDDING_BATCH_SIZE")
    ml_max_chunk_size: int = Field(default=1000, validation_alias="ML_MAX_CHUNK_SIZE")

    # Reranker
    ml_rerank_top_k: int = Field(default=10, validation_alias="ML_RERANK_TOP_K")

    # Token estimation
    ml_token_encoding: str = Field(default="cl100k_base", validation_alias="ML_TOKEN_ENCODING")


def get_config(service_name: str) -> BaseConfig:
    """Get configuration for a specific service.

    Parameters
    - service_name: Literal name, currently only ``embedding``.

    Returns
    - A concrete ``BaseConfig`` subclass pre‑wired to read the right env vars.

    Raises
    - ValueError: for an unknown service name
    """
    config_map = {
        "embedding": EmbeddingConfig,
    }

    config_class = config_map.get(service_name)
    if config_class is None:
        raise ValueError(f"Unknown service: {service_name!r}")
    return config_class()
