"""Tests for the bounded, retrying executor."""

import asyncio

import pytest

from app.pipelines.executor import AsyncCaller, RetryConfig, create_async_caller
from tests.helpers import no_wait_retries


class InFlightCounter:
    def __init__(self):
        self.current = 0
        self.peak = 0

    def task(self, delay: float = 0.01):
        async def run():
            self.current += 1
            self.peak = max(self.peak, self.current)
            await asyncio.sleep(delay)
            self.current -= 1
            return "done"
        return run


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_cap():
    """Test that K tasks with cap M < K never run more than M at once."""
    caller = AsyncCaller(max_concurrency=3, retry_config=no_wait_retries())
    counter = InFlightCounter()

    results = await asyncio.gather(*(caller.call(counter.task()) for _ in range(10)))

    assert results == ["done"] * 10
    assert counter.peak == 3


@pytest.mark.asyncio
async def test_unbounded_runs_everything_together():
    """Test default executor admits every task immediately."""
    caller = AsyncCaller(retry_config=no_wait_retries())
    counter = InFlightCounter()

    await asyncio.gather(*(caller.call(counter.task()) for _ in range(8)))

    assert counter.peak == 8


@pytest.mark.asyncio
async def test_waiters_admitted_in_submission_order():
    """Test queued calls start first-submitted-first-admitted."""
    caller = AsyncCaller(max_concurrency=1, retry_config=no_wait_retries())
    started = []

    def task(i):
        async def run():
            started.append(i)
            await asyncio.sleep(0)
            return i
        return run

    results = await asyncio.gather(*(caller.call(task(i)) for i in range(6)))

    assert started == list(range(6))
    assert results == list(range(6))


@pytest.mark.asyncio
async def test_retry_exhaustion_attempts_one_plus_max_retries():
    """Test an always-failing task runs exactly 1 + max_retries times."""
    caller = AsyncCaller(retry_config=no_wait_retries(max_retries=2))
    attempts = 0

    async def always_fails():
        nonlocal attempts
        attempts += 1
        raise ValueError(f"boom {attempts}")

    with pytest.raises(ValueError, match="boom 3"):
        await caller.call(always_fails)

    assert attempts == 3


@pytest.mark.asyncio
async def test_zero_retries_surfaces_first_failure():
    caller = AsyncCaller(retry_config=no_wait_retries(max_retries=0))
    attempts = 0

    async def fails():
        nonlocal attempts
        attempts += 1
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        await caller.call(fails)
    assert attempts == 1


@pytest.mark.asyncio
async def test_transient_failure_recovers():
    """Test a task that fails twice then succeeds returns its result."""
    caller = AsyncCaller(retry_config=no_wait_retries(max_retries=3))
    attempts = 0

    async def flaky():
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise TimeoutError("slow")
        return 42

    assert await caller.call(flaky) == 42
    assert attempts == 3
    assert caller.active_tasks == 0


@pytest.mark.asyncio
async def test_non_retryable_exception_is_not_retried():
    config = RetryConfig(max_retries=3, base_delay=0, min_delay=0, retryable_exceptions=(ConnectionError,))
    caller = AsyncCaller(retry_config=config)
    attempts = 0

    async def bad_input():
        nonlocal attempts
        attempts += 1
        raise ValueError("malformed")

    with pytest.raises(ValueError):
        await caller.call(bad_input)
    assert attempts == 1


@pytest.mark.asyncio
async def test_slot_is_released_after_failure():
    caller = AsyncCaller(max_concurrency=1, retry_config=no_wait_retries(max_retries=0))

    async def fails():
        raise RuntimeError("nope")

    async def works():
        return "ok"

    with pytest.raises(RuntimeError):
        await caller.call(fails)
    assert await asyncio.wait_for(caller.call(works), timeout=1) == "ok"


def test_backoff_grows_exponentially_and_is_capped():
    caller = AsyncCaller(retry_config=RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False))

    assert [caller._calculate_delay(a) for a in range(4)] == [1.0, 2.0, 4.0, 5.0]


def test_backoff_jitter_stays_within_ten_percent():
    caller = AsyncCaller(retry_config=RetryConfig(base_delay=2.0, max_delay=60.0, jitter=True))

    for _ in range(50):
        assert 1.8 <= caller._calculate_delay(0) <= 2.2


def test_invalid_limits_rejected():
    with pytest.raises(ValueError):
        AsyncCaller(max_concurrency=0)
    with pytest.raises(ValueError):
        RetryConfig(max_retries=-1)


def test_create_async_caller():
    caller = create_async_caller(max_concurrency=4, max_retries=5)
    assert caller.max_concurrency == 4
    assert caller.retry_config.max_retries == 5
