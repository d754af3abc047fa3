"""Shared helpers: retry/backoff and clock utilities."""

from servicescaler.utils.retry import (
    MaxRetriesExceeded,
    RetryConfig,
    call_with_retry,
    compute_delay,
)
from servicescaler.utils.time import utcnow

__all__ = [
    "MaxRetriesExceeded",
    "RetryConfig",
    "call_with_retry",
    "compute_delay",
    "utcnow",
]
