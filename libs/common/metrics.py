"""Metrics collection for the embedding service.

Provides a thin convenience wrapper around ``prometheus_client`` so the
service consistently records HTTP, embedding, reranking, cache and executor
metrics.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- A single registry is kept per collector (can be injected for tests)
"""

from typing import Optional
from prometheus_client import Counter, Histogram, CollectorRegistry, generate_latest
import structlog

logger = structlog.get_logger("metrics")


class MetricsCollector:
    """Centralized metrics collection.

    Parameters
    - service_name: Logical name used for scoping/labels if desired
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        self.request_count = Counter(
            'http_requests_total',
            'Total HTTP requests',
            ['method', 'endpoint', 'status'],
            registry=self.registry
        )

        self.request_duration = Histogram(
            'http_request_duration_seconds',
            'HTTP request duration',
            ['method', 'endpoint'],
            registry=self.registry
        )

        self.embedding_requests = Counter(
            'ml_embedding_requests_total',
            'Total embedding generation requests',
            ['model_name', 'mode'],
            registry=self.registry
        )

        self.embedding_duration = Histogram(
            'ml_embedding_duration_seconds',
            'Embedding generation duration',
            ['model_name', 'mode'],
            registry=self.registry
        )

        self.rerank_requests = Counter(
            'ml_rerank_requests_total',
            'Total rerank requests',
            ['model_name'],
            registry=self.registry
        )

        self.rerank_duration = Histogram(
            'ml_rerank_duration_seconds',
            'Rerank duration',
            ['model_name'],
            registry=self.registry
        )

        self.cache_hits = Counter(
            'ml_cache_hits_total',
            'Total cache hits',
            ['cache_type'],
            registry=self.registry
        )

        self.cache_misses = Counter(
            'ml_cache_misses_total',
            'Total cache misses',
            ['cache_type'],
            registry=self.registry
        )

        self.executor_retries = Counter(
            'ml_executor_retries_total',
            'Task attempts that failed and were retried',
            ['operation'],
            registry=self.registry
        )

    def record_http_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration: float
    ) -> None:
        """Record HTTP request metrics.

        duration is expected in seconds to match Prometheus histogram units.
        """
        self.request_count.labels(method=method, endpoint=endpoint, status=status).inc()
        self.request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def record_embedding(self, model_name: str, mode: str, duration: float) -> None:
        """Record embedding generation metrics."""
        self.embedding_requests.labels(model_name=model_name, mode=mode).inc()
        self.embedding_duration.labels(model_name=model_name, mode=mode).observe(duration)

    def record_rerank(self, model_name: str, duration: float) -> None:
        """Record reranking metrics."""
        self.rerank_requests.labels(model_name=model_name).inc()
        self.rerank_duration.labels(model_name=model_name).observe(duration)

    def record_cache_hit(self, cache_type: str, count: int = 1) -> None:
        """Record cache hit."""
        self.cache_hits.labels(cache_type=cache_type).inc(count)

    def record_cache_miss(self, cache_type: str, count: int = 1) -> None:
        """Record cache miss."""
        self.cache_misses.labels(cache_type=cache_type).inc(count)

    def record_retry(self, operation: str) -> None:
        self.executor_retries.labels(operation=operation).inc()

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector(service_name: str) -> MetricsCollector:
    """Get or create metrics collector for a service.

    Returns a process‑wide singleton to avoid duplicate collectors/labels.
    """
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(service_name)
    return _metrics_collector
