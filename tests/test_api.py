"""HTTP tests for the embedding service API."""

import pytest
from fastapi.testclient import TestClient

from app.api.routes import MAX_TEXT_LENGTH, get_token_estimator
from app.batching.resources import FixedBatchSizePolicy
from app.encoders.embeddings import EmbeddingsService
from app.encoders.engine_registry import EngineRegistry
from app.main import app
from app.pipelines.executor import AsyncCaller
from tests.helpers import FakeEmbeddingEngine, FakeLoader, fake_vector, no_wait_retries


@pytest.fixture
def engine():
    return FakeEmbeddingEngine()


@pytest.fixture
def client(tmp_path, monkeypatch, engine):
    """Test client whose engines are fakes and whose cache lives under tmp_path."""
    monkeypatch.setenv("ML_CACHE_ROOT", str(tmp_path / "cache"))
    app.dependency_overrides[get_token_estimator] = lambda: (lambda value: 7)

    with TestClient(app) as test_client:
        registry = EngineRegistry(FakeLoader(engine))
        app.state.engine_registry = registry
        app.state.caller = AsyncCaller(retry_config=no_wait_retries())
        app.state.embeddings_service = EmbeddingsService(
            registry=registry,
            cache_store=app.state.cache_store,
            caller=app.state.caller,
            batch_size_policy=FixedBatchSizePolicy(2),
        )
        yield test_client

    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_embed_query(client):
    response = client.get("/api/v1/embeddings", params={"query": "hello"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["vector"] == fake_vector("hello")
    assert body["metadata"]["tokens"] == 7
    assert body["metadata"]["duration"] >= 0


def test_embed_documents(client, engine):
    documents = ["one", "two", "three"]

    response = client.post("/api/v1/embeddings", json={"documents": documents})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["vectors"] == [fake_vector(d) for d in documents]
    assert len(engine.calls) == 2


def test_cached_documents_skip_inference_on_repeat(client, engine):
    payload = {"documents": ["alpha", "beta"]}

    first = client.post("/api/v1/embeddings/cache", json=payload)
    calls = len(engine.calls)
    second = client.post("/api/v1/embeddings/cache", json=payload)

    assert first.json()["vectors"] == second.json()["vectors"]
    assert calls == 1
    assert len(engine.calls) == calls


def test_cached_query(client, engine):
    first = client.get("/api/v1/embeddings/cache", params={"query": "cached"})
    second = client.get("/api/v1/embeddings/cache", params={"query": "cached"})

    assert first.json()["vector"] == second.json()["vector"] == fake_vector("cached")
    assert engine.calls == [["cached"]]


def test_clear_cache(client, engine):
    client.get("/api/v1/embeddings/cache", params={"query": "cached"})

    response = client.delete("/api/v1/embeddings/cache")
    client.get("/api/v1/embeddings/cache", params={"query": "cached"})

    assert response.json() == {"status": "success"}
    assert engine.calls == [["cached"], ["cached"]]


def test_empty_documents_report_error_status(client, engine):
    response = client.post("/api/v1/embeddings", json={"documents": []})

    assert response.status_code == 200
    assert response.json()["status"] == "error"
    assert response.json()["vectors"] == []
    assert engine.calls == []


@pytest.mark.parametrize("text", ["", "x" * (MAX_TEXT_LENGTH + 1)])
def test_invalid_text_rejected(client, engine, text):
    query_response = client.get("/api/v1/embeddings", params={"query": text})
    documents_response = client.post("/api/v1/embeddings", json={"documents": [text]})

    assert query_response.status_code == 422
    assert documents_response.status_code == 422
    assert engine.calls == []


def test_max_length_text_accepted(client):
    response = client.post("/api/v1/embeddings", json={"documents": ["x" * MAX_TEXT_LENGTH]})

    assert response.status_code == 200


def test_inference_failure_is_500(client, engine):
    engine.fail_times = 100

    response = client.post("/api/v1/embeddings", json={"documents": ["boom"]})

    assert response.status_code == 500
    assert "out of memory" in response.json()["detail"]


def test_rerank(client):
    response = client.post(
        "/api/v1/reranker",
        json={"query": "q", "documents": ["a", "longer document"], "topK": 1, "returnDocuments": True},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert len(body["results"]) == 1
    assert body["results"][0]["corpus_id"] == 1
    assert body["results"][0]["text"] == "longer document"
    assert body["metadata"]["tokens"] == 7


def test_rerank_omits_text_by_default(client):
    response = client.post("/api/v1/reranker", json={"query": "q", "documents": ["a", "bb"]})

    results = response.json()["results"]
    assert [r["corpus_id"] for r in results] == [1, 0]
    assert all("text" not in r for r in results)


def test_metrics_endpoint(client):
    client.get("/api/v1/embeddings", params={"query": "hello"})

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text
    assert "ml_embedding_requests_total" in response.text
    assert "X-Process-Time" in response.headers


def test_root_lists_endpoints(client):
    client.get("/api/v1/embeddings", params={"query": "hello"})

    body = client.get("/").json()

    assert body["service"] == "embedding-service"
    assert body["endpoints"]["reranker"] == "/api/v1/reranker"
    assert [m["name"] for m in body["models"]] == ["sentence-transformers/all-MiniLM-L6-v2"]
