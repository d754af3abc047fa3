"""Unit tests for retry with backoff."""

import asyncio

import pytest

from servicescaler.errors import TransientIOError
from servicescaler.utils.retry import (
    MaxRetriesExceeded,
    RetryConfig,
    call_with_retry,
    compute_delay,
)


class Flaky:
    """Coroutine callable failing a set number of times before succeeding."""

    def __init__(self, failures: int, exc: Exception | None = None):
        self.failures = failures
        self.exc = exc or TransientIOError("op", "boom")
        self.calls = 0

    async def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return value


class TestComputeDelay:
    """Tests for compute_delay."""

    def test_exponential(self):
        """Delay doubles per attempt without jitter."""
        config = RetryConfig(base_delay=0.5, max_delay=100, jitter_max=0)
        assert [compute_delay(i, config) for i in range(4)] == [0.5, 1.0, 2.0, 4.0]

    def test_capped(self):
        """Delay never exceeds max_delay."""
        config = RetryConfig(base_delay=1, max_delay=3, jitter_max=0)
        assert compute_delay(10, config) == 3

    def test_jitter_bounded(self):
        """Jitter adds at most jitter_max."""
        config = RetryConfig(base_delay=1, max_delay=100, jitter_max=0.1)
        for _ in range(20):
            assert 1.0 <= compute_delay(0, config) <= 1.1


class TestCallWithRetry:
    """Tests for call_with_retry."""

    def test_success_after_failures(self, fast_retry):
        """Transient failures are retried until success."""
        func = Flaky(failures=2)
        assert asyncio.run(call_with_retry(func, 42, config=fast_retry)) == 42
        assert func.calls == 3

    def test_exhausted(self, fast_retry):
        """Exhaustion raises MaxRetriesExceeded carrying the last error."""
        func = Flaky(failures=10)
        with pytest.raises(MaxRetriesExceeded) as excinfo:
            asyncio.run(call_with_retry(func, 1, config=fast_retry))

        assert func.calls == fast_retry.max_retries + 1
        assert excinfo.value.attempts == fast_retry.max_retries
        assert isinstance(excinfo.value.last_exception, TransientIOError)

    def test_non_retryable_propagates(self, fast_retry):
        """Errors outside retryable_exceptions are raised immediately."""
        func = Flaky(failures=1, exc=KeyError("x"))
        with pytest.raises(KeyError):
            asyncio.run(call_with_retry(func, 1, config=fast_retry))
        assert func.calls == 1

    def test_connection_error_retried(self, fast_retry):
        """ConnectionError counts as transient."""
        func = Flaky(failures=1, exc=ConnectionError("reset"))
        assert asyncio.run(call_with_retry(func, "ok", config=fast_retry)) == "ok"
