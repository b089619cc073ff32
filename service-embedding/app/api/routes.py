"""API routes for the embedding service."""

import time
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Union
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field
import structlog

from ..encoders.embeddings import EmbeddingsService
from ..encoders.reranker import RerankerService
from ..utils.tokens import estimate_tokens
from libs.common.config import EmbeddingConfig
from libs.common.metrics import MetricsCollector

logger = structlog.get_logger("embedding_service.api")

router = APIRouter()

_config = EmbeddingConfig()
MAX_TEXT_LENGTH = int(_config.ml_max_chunk_size * 1.25)

Chunk = Annotated[str, Field(min_length=1, max_length=MAX_TEXT_LENGTH, description="Value to embed")]
NonEmptyText = Annotated[str, Field(min_length=1)]


class ResponseMetadata(BaseModel):
    tokens: int = Field(..., description="Estimated token count of the input")
    duration: float = Field(..., description="Processing time in milliseconds")


class DocumentsRequest(BaseModel):
    """Request model for document embedding endpoints."""
    documents: List[Chunk] = Field(..., description="Documents to embed")


class EmbedQueryResponse(BaseModel):
    """Embedding vector."""
    status: Literal["success", "error"]
    vector: Optional[List[float]] = None
    metadata: ResponseMetadata


class EmbedDocumentsResponse(BaseModel):
    """Embedding vectors."""
    status: Literal["success", "error"]
    vectors: Optional[List[List[float]]] = None
    metadata: ResponseMetadata


class RerankRequest(BaseModel):
    """Request model for the reranker endpoint."""
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model: Optional[str] = Field(None, description="Model to use")
    query: NonEmptyText = Field(..., description="Query to rerank")
    documents: List[NonEmptyText] = Field(..., description="Documents to rerank")
    top_k: Optional[int] = Field(None, alias="topK", ge=1, description="Top K documents to return")
    return_documents: bool = Field(False, alias="returnDocuments", description="Return documents")


class RerankResult(BaseModel):
    corpus_id: int
    score: float
    text: Optional[str] = None


class RerankResponse(BaseModel):
    """Reranking results."""
    status: Literal["success", "error"]
    results: List[RerankResult]
    metadata: ResponseMetadata


def get_embeddings_service(request: Request) -> EmbeddingsService:
    """Get embeddings service from application state."""
    return request.app.state.embeddings_service


def get_reranker_factory(request: Request) -> Callable[..., RerankerService]:
    """Build a reranker sharing the application's engine registry and executor."""
    state = request.app.state
    config: EmbeddingConfig = state.config

    def factory(model: Optional[str], top_k: Optional[int], return_documents: bool) -> RerankerService:
        return RerankerService(
            registry=state.engine_registry,
            caller=state.caller,
            model=model or config.ml_reranker_model,
            top_k=top_k or config.ml_rerank_top_k,
            return_documents=return_documents,
        )

    return factory


def get_token_estimator(request: Request) -> Callable[[Union[str, List[str]]], int]:
    encoding_name = request.app.state.config.ml_token_encoding
    return lambda value: estimate_tokens(value, encoding_name)


def get_metrics(request: Request) -> MetricsCollector:
    """Get metrics collector from application state."""
    return request.app.state.metrics_collector


def _status(vectors: List[Any]) -> str:
    return "success" if vectors else "error"


@router.get("/health")
async def health():
    return {"status": "ok"}


async def _embed_query(
    query: str,
    cached: bool,
    service: EmbeddingsService,
    estimator: Callable[[Union[str, List[str]]], int],
    metrics: MetricsCollector
) -> EmbedQueryResponse:
    mode = "cache" if cached else "direct"
    start_time = time.time()
    try:
        if cached:
            vector = await service.cache_embed_query(query)
        else:
            vector = await service.embed_query(query)
    except Exception as e:
        logger.error("Query embedding failed", mode=mode, error=str(e))
        raise HTTPException(status_code=500, detail=f"Embedding generation failed: {str(e)}")

    duration = time.time() - start_time
    metrics.record_embedding(model_name=service.model or "unknown", mode=mode, duration=duration)
    return EmbedQueryResponse(
        status=_status(vector),
        vector=vector,
        metadata=ResponseMetadata(tokens=estimator(query), duration=duration * 1000),
    )


async def _embed_documents(
    documents: List[str],
    cached: bool,
    service: EmbeddingsService,
    estimator: Callable[[Union[str, List[str]]], int],
    metrics: MetricsCollector
) -> EmbedDocumentsResponse:
    mode = "cache" if cached else "direct"
    start_time = time.time()
    try:
        if cached:
            vectors = await service.cache_embed_documents(documents)
        else:
            vectors = await service.embed_documents(documents)
    except Exception as e:
        logger.error("Document embedding failed", mode=mode, count=len(documents), error=str(e))
        raise HTTPException(status_code=500, detail=f"Embedding generation failed: {str(e)}")

    duration = time.time() - start_time
    metrics.record_embedding(model_name=service.model or "unknown", mode=mode, duration=duration)
    logger.info("Embeddings generated", mode=mode, count=len(vectors), latency_ms=duration * 1000)
    return EmbedDocumentsResponse(
        status=_status(vectors),
        vectors=vectors,
        metadata=ResponseMetadata(tokens=estimator(documents), duration=duration * 1000),
    )


@router.get("/v1/embeddings", response_model=EmbedQueryResponse)
async def embed_query(
    query: str = Query(..., min_length=1, max_length=MAX_TEXT_LENGTH, description="Query to embed"),
    service: EmbeddingsService = Depends(get_embeddings_service),
    estimator=Depends(get_token_estimator),
    metrics_collector: MetricsCollector = Depends(get_metrics)
):
    """Embed query value."""
    return await _embed_query(query, False, service, estimator, metrics_collector)


@router.post("/v1/embeddings", response_model=EmbedDocumentsResponse)
async def embed_documents(
    request: DocumentsRequest,
    service: EmbeddingsService = Depends(get_embeddings_service),
    estimator=Depends(get_token_estimator),
    metrics_collector: MetricsCollector = Depends(get_metrics)
):
    """Embed documents."""
    return await _embed_documents(request.documents, False, service, estimator, metrics_collector)


@router.get("/v1/embeddings/cache", response_model=EmbedQueryResponse)
async def cache_embed_query(
    query: str = Query(..., min_length=1, max_length=MAX_TEXT_LENGTH, description="Query to embed"),
    service: EmbeddingsService = Depends(get_embeddings_service),
    estimator=Depends(get_token_estimator),
    metrics_collector: MetricsCollector = Depends(get_metrics)
):
    """Cache backed embedding for query."""
    return await _embed_query(query, True, service, estimator, metrics_collector)


@router.post("/v1/embeddings/cache", response_model=EmbedDocumentsResponse)
async def cache_embed_documents(
    request: DocumentsRequest,
    service: EmbeddingsService = Depends(get_embeddings_service),
    estimator=Depends(get_token_estimator),
    metrics_collector: MetricsCollector = Depends(get_metrics)
):
    """Cache backed embedding for documents."""
    return await _embed_documents(request.documents, True, service, estimator, metrics_collector)


@router.delete("/v1/embeddings/cache")
async def clear_cache(service: EmbeddingsService = Depends(get_embeddings_service)):
    """Drop every cached vector."""
    try:
        await service.cache_store.clear()
    except Exception as e:
        logger.error("Cache clear failed", error=str(e))
        raise HTTPException(status_code=500, detail=f"Cache clear failed: {str(e)}")
    return {"status": "success"}


@router.post("/v1/reranker", response_model=RerankResponse, response_model_exclude_none=True)
async def rerank(
    request: RerankRequest,
    reranker_factory=Depends(get_reranker_factory),
    estimator=Depends(get_token_estimator),
    metrics_collector: MetricsCollector = Depends(get_metrics)
):
    """Rerank documents."""
    reranker = reranker_factory(request.model, request.top_k, request.return_documents)
    start_time = time.time()
    try:
        results: List[Dict[str, Any]] = await reranker.rank(request.query, request.documents)
    except Exception as e:
        logger.error("Reranking failed", model_name=reranker.model, error=str(e))
        raise HTTPException(status_code=500, detail=f"Reranking failed: {str(e)}")

    duration = time.time() - start_time
    metrics_collector.record_rerank(model_name=reranker.model, duration=duration)
    return RerankResponse(
        status=_status(results),
        results=[RerankResult(**result) for result in results],
        metadata=ResponseMetadata(tokens=estimator(request.query), duration=duration * 1000),
    )
