"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from servicescaler.clients import (
    InMemoryDirectory,
    InMemoryMetricSource,
    InMemoryOrchestrator,
    StaticHealthProbe,
)
from servicescaler.scaling.config import (
    AlarmConfig,
    Comparator,
    ServiceConfig,
    StepAdjustment,
)
from servicescaler.utils.retry import RetryConfig

START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_retry():
    """Retry settings with no backoff delay."""
    return RetryConfig(max_retries=2, base_delay=0.0, max_delay=0.0, jitter_max=0.0)


@pytest.fixture
def high_cpu_alarm():
    """The ≥70 CPU alarm used throughout the scenarios."""
    return AlarmConfig(
        id="high-cpu",
        metric_name="CPUUtilization",
        comparator=Comparator.GREATER_THAN_OR_EQUAL,
        threshold=70.0,
        evaluation_periods=1,
    )


@pytest.fixture
def scale_up_steps():
    return [
        StepAdjustment(lower_bound=0, upper_bound=15, delta=1),
        StepAdjustment(lower_bound=15, upper_bound=25, delta=2),
        StepAdjustment(lower_bound=25, delta=3),
    ]


@pytest.fixture
def service_config(fast_retry):
    """Default CPU alarm pair with fast retries and a short drain."""
    return ServiceConfig(
        service_id="svc",
        service_name="svc.local",
        min_capacity=2,
        max_capacity=10,
        desired_capacity=2,
        drain_timeout_seconds=1.0,
        retry=fast_retry,
    )


@pytest.fixture
def orchestrator():
    return InMemoryOrchestrator()


@pytest.fixture
def directory():
    return InMemoryDirectory()


@pytest.fixture
def probe():
    return StaticHealthProbe()


@pytest.fixture
def metric_source(clock):
    return InMemoryMetricSource(clock=clock)


@pytest.fixture
def cpu_series():
    """CPU utilisation with a sustained spike and a quiet tail."""
    baseline = np.full(20, 45.0)
    spike = np.linspace(72, 98, 10)
    quiet = np.full(20, 12.0)
    return np.concatenate([baseline, spike, quiet])
