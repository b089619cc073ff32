"""Embedding service main application."""

import time
from contextlib import asynccontextmanager
from functools import partial

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from .api.routes import router as api_router
from .batching.resources import create_batch_size_policy, detect_device
from .encoders.embeddings import EmbeddingsService, PipelineOptions
from .encoders.engine_registry import EngineRegistry, load_sentence_transformer
from .pipelines.executor import create_async_caller
from .runtime.metrics import get_metrics_collector
from .storage.cache_store import EmbeddingsCacheStore
from libs.common.config import EmbeddingConfig, get_config
from libs.common.logging import configure_logging

logger = structlog.get_logger("embedding_service")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Wires the executor, cache store, engine registry and embeddings service
    into ``app.state``. Models are loaded lazily on first use.
    """
    config: EmbeddingConfig = get_config("embedding")
    configure_logging("embedding-service", config.ml_log_level, config.ml_log_format, environment=config.ml_env)
    app.state.config = config
    app.state.startup_time = time.time()

    logger.info("Starting embedding service")

    app.state.metrics_collector = get_metrics_collector("embedding-service")

    device = detect_device(config.ml_gpu_preference)
    app.state.engine_registry = EngineRegistry(partial(load_sentence_transformer, device=device))
    app.state.caller = create_async_caller(
        max_concurrency=config.ml_max_concurrency,
        max_retries=config.ml_max_retries,
        base_delay=config.ml_retry_base_delay,
        max_delay=config.ml_retry_max_delay,
        metrics=app.state.metrics_collector,
    )
    app.state.cache_store = EmbeddingsCacheStore(config.ml_cache_root)
    app.state.embeddings_service = EmbeddingsService(
        registry=app.state.engine_registry,
        cache_store=app.state.cache_store,
        caller=app.state.caller,
        model=config.ml_embedding_model,
        strip_new_lines=config.ml_strip_new_lines,
        options=PipelineOptions(pooling=config.ml_pooling, normalize=config.ml_normalize),
        batch_size_policy=create_batch_size_policy(config.ml_embedding_batch_size),
        metrics=app.state.metrics_collector,
    )

    logger.info(
        "Embedding service started successfully",
        model=config.ml_embedding_model,
        cache_root=str(app.state.cache_store.root),
        device=device
    )

    yield

    logger.info("Embedding service shutdown complete")


app = FastAPI(
    title="Embedding Service",
    description="Embedding and reranking inference with an on-disk vector cache",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api")


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Collect metrics for HTTP requests."""
    start_time = time.time()

    try:
        response = await call_next(request)
        status_code = response.status_code
    except Exception as e:
        logger.error("Unhandled request error", path=request.url.path, error=str(e))
        status_code = 500
        response = JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "detail": str(e)}
        )

    duration = time.time() - start_time
    response.headers["X-Process-Time"] = str(duration)

    if hasattr(app.state, 'metrics_collector'):
        app.state.metrics_collector.record_http_request(
            method=request.method,
            endpoint=request.url.path,
            status=status_code,
            duration=duration
        )

    return response


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    if hasattr(app.state, 'metrics_collector'):
        return Response(content=app.state.metrics_collector.get_metrics(), media_type="text/plain")
    return Response(content="# No metrics available\n", media_type="text/plain")


@app.get("/live")
async def liveness():
    """Liveness probe. Returns quickly if process is responsive."""
    return {
        "status": "alive",
        "service": "embedding-service",
        "uptime_seconds": time.time() - getattr(app.state, "startup_time", time.time())
    }


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "embedding-service",
        "version": "0.1.0",
        "status": "running",
        "endpoints": {
            "health": "/api/health",
            "metrics": "/metrics",
            "embeddings": "/api/v1/embeddings",
            "embeddings_cache": "/api/v1/embeddings/cache",
            "reranker": "/api/v1/reranker"
        },
        "models": app.state.engine_registry.list_models() if hasattr(app.state, "engine_registry") else []
    }


def run() -> None:
    """Console entrypoint."""
    config = get_config("embedding")
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=config.ml_embedding_port,
        log_level=config.ml_log_level.lower()
    )


if __name__ == "__main__":
    run()
