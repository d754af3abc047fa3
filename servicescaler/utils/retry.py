"""Retry with bounded exponential backoff.

Used at every call site that talks to an external collaborator
(orchestrator, metric API, discovery directory).
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from servicescaler.errors import TransientIOError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 0.5  # seconds
DEFAULT_MAX_DELAY = 10.0  # seconds
DEFAULT_JITTER_MAX = 0.1  # seconds


class MaxRetriesExceeded(Exception):
    """Raised when all retry attempts have been exhausted."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(
            f"Max retries ({attempts}) exceeded. "
            f"Last error: {last_exception}"
        )


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry logic."""

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    jitter_max: float = DEFAULT_JITTER_MAX
    retryable_exceptions: tuple[type[Exception], ...] = (
        TransientIOError,
        ConnectionError,
        TimeoutError,
    )

    def to_dict(self) -> dict:
        return {
            "max_retries": self.max_retries,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "jitter_max": self.jitter_max,
        }


def compute_delay(attempt: int, config: RetryConfig) -> float:
    """Compute the delay for the given attempt number.

    Args:
        attempt: Zero-based attempt index (0 = first retry).
        config: Retry configuration.

    Returns:
        Delay in seconds, capped at max_delay.
    """
    delay = config.base_delay * (2 ** attempt)
    if config.jitter_max > 0:
        delay += random.uniform(0, config.jitter_max)
    return min(delay, config.max_delay)


async def call_with_retry(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    config: RetryConfig | None = None,
    **kwargs: Any,
) -> Any:
    """Await ``func(*args, **kwargs)``, retrying retryable failures with backoff.

    Raises:
        MaxRetriesExceeded: once ``config.max_retries`` retries have failed.
    """
    cfg = config or RetryConfig()
    name = getattr(func, "__qualname__", repr(func))
    last_exc: Exception | None = None

    for attempt in range(cfg.max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except cfg.retryable_exceptions as exc:
            last_exc = exc
            if attempt < cfg.max_retries:
                delay = compute_delay(attempt, cfg)
                logger.warning(
                    "Retry %d/%d for %s after %.2fs: %s",
                    attempt + 1,
                    cfg.max_retries,
                    name,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    "All %d retries exhausted for %s: %s",
                    cfg.max_retries,
                    name,
                    exc,
                )
    raise MaxRetriesExceeded(cfg.max_retries, last_exc)  # type: ignore[arg-type]
