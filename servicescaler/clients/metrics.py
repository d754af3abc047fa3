"""Metric API interface and an in-memory datapoint store."""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable

import numpy as np

from servicescaler.errors import TransientIOError
from servicescaler.scaling.alarm import MetricSample
from servicescaler.scaling.config import Aggregation
from servicescaler.utils.time import utcnow

logger = logging.getLogger(__name__)

_AGGREGATORS: dict[Aggregation, Callable[[np.ndarray], float]] = {
    Aggregation.AVERAGE: np.mean,
    Aggregation.MIN: np.min,
    Aggregation.MAX: np.max,
}


class MetricSource(ABC):
    """Poll source for aggregated metric samples.

    No delivery guarantees beyond at most one sample per window.
    """

    @abstractmethod
    async def query(
        self,
        metric_name: str,
        dimensions: dict[str, str],
        period: timedelta,
        aggregation: Aggregation,
    ) -> MetricSample | None:
        """Return the aggregate over the most recent ``period``, or None if empty.

        Raises:
            TransientIOError: if the metric API could not be reached.
        """


class InMemoryMetricSource(MetricSource):
    """Stores raw datapoints and aggregates them on query."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._datapoints: dict[tuple, list[tuple[datetime, float]]] = defaultdict(list)
        self._failures_left = 0

    @staticmethod
    def _key(metric_name: str, dimensions: dict[str, str] | None) -> tuple:
        return (metric_name, tuple(sorted((dimensions or {}).items())))

    def fail_next(self, count: int = 1) -> None:
        self._failures_left = count

    def put(
        self,
        metric_name: str,
        value: float,
        timestamp: datetime | None = None,
        dimensions: dict[str, str] | None = None,
    ) -> None:
        """Record one raw datapoint."""
        self._datapoints[self._key(metric_name, dimensions)].append(
            (timestamp or self._clock(), float(value))
        )

    async def query(
        self,
        metric_name: str,
        dimensions: dict[str, str],
        period: timedelta,
        aggregation: Aggregation,
    ) -> MetricSample | None:
        if self._failures_left > 0:
            self._failures_left -= 1
            raise TransientIOError("query", "injected failure")

        end = self._clock()
        start = end - period
        values = np.array([
            value
            for ts, value in self._datapoints.get(self._key(metric_name, dimensions), [])
            if start < ts <= end
        ])
        if values.size == 0:
            return None
        return MetricSample(
            timestamp=end,
            value=float(_AGGREGATORS[aggregation](values)),
            window=period,
        )
