"""Bounded, retrying async task executor.

``AsyncCaller`` admits at most ``max_concurrency`` tasks at a time across every
caller sharing the instance and retries failing tasks with exponential
backoff. It knows nothing about what the tasks do.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type
import structlog

from libs.common.metrics import MetricsCollector

logger = structlog.get_logger("embedding_service.executor")


class RetryConfig:
    """Configuration for retry behavior.

    ``max_retries`` counts attempts *after* the first one, so a task that
    always fails runs ``1 + max_retries`` times.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        min_delay: float = 0.1,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,)
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.min_delay = min_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions


class AsyncCaller:
    """Runs zero-argument async operations under a concurrency cap with retries.

    Parameters
    - max_concurrency: Simultaneous tasks allowed; ``None`` means unbounded
    - retry_config: ``RetryConfig``; defaults to three retries
    - metrics: Optional ``MetricsCollector`` used to count retries

    Notes
    - Waiters are admitted first-in-first-out as slots free up
    - A task keeps its slot while it backs off between attempts
    """

    def __init__(
        self,
        max_concurrency: Optional[int] = None,
        retry_config: Optional[RetryConfig] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1 or None")
        self.max_concurrency = max_concurrency
        self.retry_config = retry_config or RetryConfig()
        self.metrics = metrics
        self._semaphore: Optional[asyncio.Semaphore] = (
            asyncio.Semaphore(max_concurrency) if max_concurrency is not None else None
        )
        self.active_tasks = 0

    async def call(
        self,
        task: Callable[[], Awaitable[Any]],
        operation_name: str = "task"
    ) -> Any:
        """Run ``task`` once a slot is free and return its result."""
        if self._semaphore is None:
            return await self._run_with_retry(task, operation_name)

        async with self._semaphore:
            return await self._run_with_retry(task, operation_name)

    async def _run_with_retry(self, task: Callable[[], Awaitable[Any]], operation_name: str) -> Any:
        config = self.retry_config
        total_attempts = config.max_retries + 1
        self.active_tasks += 1
        try:
            for attempt in range(total_attempts):
                try:
                    result = await task()
                except config.retryable_exceptions as e:
                    if attempt == total_attempts - 1:
                        logger.error(
                            "Operation failed after all retries",
                            operation=operation_name,
                            attempts=total_attempts,
                            error=str(e)
                        )
                        raise

                    delay = self._calculate_delay(attempt)
                    logger.warning(
                        "Operation failed, retrying",
                        operation=operation_name,
                        attempt=attempt + 1,
                        total_attempts=total_attempts,
                        delay_seconds=delay,
                        error=str(e)
                    )
                    if self.metrics is not None:
                        self.metrics.record_retry(operation_name)
                    await asyncio.sleep(delay)
                    continue

                if attempt > 0:
                    logger.info(
                        "Operation succeeded after retry",
                        operation=operation_name,
                        attempt=attempt + 1,
                        total_attempts=total_attempts
                    )
                return result
        finally:
            self.active_tasks -= 1

        raise RuntimeError("Retry logic error")

    def _calculate_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt."""
        config = self.retry_config
        delay = config.base_delay * (config.exponential_base ** attempt)
        delay = min(delay, config.max_delay)

        if config.jitter:
            jitter_range = delay * 0.1
            delay += random.uniform(-jitter_range, jitter_range)

        return max(delay, config.min_delay)


def create_async_caller(
    max_concurrency: Optional[int] = None,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    metrics: Optional[MetricsCollector] = None
) -> AsyncCaller:
    """Create an executor with the default exponential backoff."""
    config = RetryConfig(
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=max_delay,
        exponential_base=2.0,
        jitter=True
    )
    return AsyncCaller(max_concurrency=max_concurrency, retry_config=config, metrics=metrics)
