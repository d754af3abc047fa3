"""Capacity controller: the single owner of a service's desired count."""

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from servicescaler.clients.orchestrator import Orchestrator
from servicescaler.errors import ConfigurationError
from servicescaler.scaling.config import ServiceConfig
from servicescaler.scaling.policy import CapacityDelta
from servicescaler.utils.retry import MaxRetriesExceeded, RetryConfig, call_with_retry
from servicescaler.utils.time import utcnow

logger = logging.getLogger(__name__)

HISTORY_SIZE = 1000


@dataclass(frozen=True)
class ScalableTarget:
    """Immutable snapshot of a service's capacity bounds and desired count."""

    service_id: str
    min_capacity: int
    max_capacity: int
    desired_capacity: int

    def __post_init__(self):
        if self.max_capacity < self.min_capacity:
            raise ConfigurationError("max_capacity must be >= min_capacity")
        if not self.min_capacity <= self.desired_capacity <= self.max_capacity:
            raise ConfigurationError(
                f"desired_capacity {self.desired_capacity} outside "
                f"[{self.min_capacity}, {self.max_capacity}]"
            )

    @classmethod
    def from_config(cls, config: ServiceConfig) -> "ScalableTarget":
        return cls(
            service_id=config.service_id,
            min_capacity=config.min_capacity,
            max_capacity=config.max_capacity,
            desired_capacity=config.desired_capacity,
        )

    def clamp(self, count: int) -> int:
        return max(self.min_capacity, min(count, self.max_capacity))

    def with_desired(self, count: int) -> "ScalableTarget":
        """Return a copy whose desired count is ``count`` clamped to the bounds."""
        return ScalableTarget(
            service_id=self.service_id,
            min_capacity=self.min_capacity,
            max_capacity=self.max_capacity,
            desired_capacity=self.clamp(count),
        )

    def to_dict(self) -> dict:
        return {
            "service_id": self.service_id,
            "min_capacity": self.min_capacity,
            "max_capacity": self.max_capacity,
            "desired_capacity": self.desired_capacity,
        }


def apply(target: ScalableTarget, delta: CapacityDelta) -> ScalableTarget:
    """Apply ``delta`` to ``target``, clamping to the capacity bounds.

    Clamping is normal operation: a delta pushing past a bound yields exactly
    that bound.
    """
    return target.with_desired(target.desired_capacity + delta.value)


@dataclass(frozen=True)
class ScalingActivity:
    """Outcome of applying one capacity delta."""

    service_id: str
    policy_id: str
    previous: int
    requested: int
    desired: int
    timestamp: datetime

    @property
    def clamped(self) -> bool:
        return self.requested != self.desired

    @property
    def changed(self) -> bool:
        return self.desired != self.previous

    def __str__(self) -> str:
        suffix = f" (clamped from {self.requested})" if self.clamped else ""
        return f"{self.service_id} via {self.policy_id}: {self.previous} -> {self.desired}{suffix}"

    def to_dict(self) -> dict:
        return {
            "service_id": self.service_id,
            "policy_id": self.policy_id,
            "previous": self.previous,
            "requested": self.requested,
            "desired": self.desired,
            "clamped": self.clamped,
            "timestamp": self.timestamp.isoformat(),
        }


class UpdateChannel:
    """Delivers desired-count updates to the orchestrator from a background task.

    Publishing never blocks. Updates arriving while one is in flight are
    coalesced so only the latest count is sent next, which keeps a slow
    orchestrator from ever receiving counts out of order.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        service_id: str,
        retry_config: RetryConfig | None = None,
    ):
        self._orchestrator = orchestrator
        self._service_id = service_id
        self._retry = retry_config or RetryConfig()
        self._latest: int | None = None
        self._in_flight: int | None = None
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: asyncio.Task | None = None
        self.acknowledged: int | None = None
        self.failed = 0

    @property
    def is_open(self) -> bool:
        return self._task is not None and not self._task.done()

    def publish(self, count: int) -> None:
        self._latest = count
        self._idle.clear()
        self._wakeup.set()

    async def open(self) -> None:
        if not self.is_open:
            self._task = asyncio.create_task(self._run(), name=f"updates-{self._service_id}")

    async def _run(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            count, self._latest = self._latest, None
            if count is not None:
                self._in_flight = count
                try:
                    await call_with_retry(
                        self._orchestrator.set_desired_count,
                        self._service_id,
                        count,
                        config=self._retry,
                    )
                    self.acknowledged = count
                except MaxRetriesExceeded as exc:
                    self.failed += 1
                    logger.error(
                        "Desired count %d for %s not delivered: %s",
                        count, self._service_id, exc.last_exception,
                    )
                finally:
                    self._in_flight = None
            if self._latest is None:
                self._idle.set()

    async def close(self, timeout: float) -> None:
        """Flush pending updates for at most ``timeout`` seconds, then stop."""
        if not self._idle.is_set():
            try:
                await asyncio.wait_for(self._idle.wait(), timeout)
            except asyncio.TimeoutError:
                abandoned = [c for c in (self._in_flight, self._latest) if c is not None]
                logger.warning(
                    "Drain timeout after %.1fs for %s, abandoned updates: %s",
                    timeout, self._service_id, abandoned,
                )
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None


class CapacityController:
    """Single owner of the service's ScalableTarget.

    Deltas from any number of policies are linearised through one ordered
    queue and applied by one worker task. Reads go through :meth:`snapshot`,
    which returns an immutable ScalableTarget. Orchestrator updates are sent
    through an UpdateChannel and never awaited by the worker.

    Usage:
        async with CapacityController(target, orchestrator) as controller:
            await controller.submit(delta)
    """

    def __init__(
        self,
        target: ScalableTarget,
        orchestrator: Orchestrator,
        retry_config: RetryConfig | None = None,
        drain_timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._target = target
        self._queue: asyncio.Queue[CapacityDelta] = asyncio.Queue()
        self._channel = UpdateChannel(orchestrator, target.service_id, retry_config)
        self._worker: asyncio.Task | None = None
        self._listeners: list[Callable[[ScalingActivity], None]] = []
        self._history: deque[ScalingActivity] = deque(maxlen=HISTORY_SIZE)
        self._clock = clock
        self.drain_timeout = drain_timeout

    @classmethod
    def from_config(cls, config: ServiceConfig, orchestrator: Orchestrator, **kwargs) -> "CapacityController":
        return cls(
            ScalableTarget.from_config(config),
            orchestrator,
            retry_config=config.retry,
            drain_timeout=config.drain_timeout_seconds,
            **kwargs,
        )

    def snapshot(self) -> ScalableTarget:
        """Get the current target. The returned object is immutable."""
        return self._target

    @property
    def channel(self) -> UpdateChannel:
        return self._channel

    def add_listener(self, listener: Callable[[ScalingActivity], None]) -> None:
        """Register a callback invoked with every ScalingActivity.

        Plain callables may block; they are run off the event loop.
        """
        self._listeners.append(listener)

    def get_history(self) -> list[ScalingActivity]:
        return list(self._history)

    async def start(self) -> None:
        await self._channel.open()
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name=f"capacity-{self._target.service_id}")

    async def submit(self, delta: CapacityDelta) -> None:
        """Enqueue a delta. Returns once queued, not once applied."""
        await self._queue.put(delta)

    async def join(self) -> None:
        """Wait until every submitted delta has been applied."""
        await self._queue.join()

    def apply_delta(self, delta: CapacityDelta) -> ScalingActivity:
        """Apply one delta to the owned target. Called only by the worker."""
        previous = self._target
        updated = apply(previous, delta)
        self._target = updated

        activity = ScalingActivity(
            service_id=previous.service_id,
            policy_id=delta.policy_id,
            previous=previous.desired_capacity,
            requested=previous.desired_capacity + delta.value,
            desired=updated.desired_capacity,
            timestamp=self._clock(),
        )
        self._history.append(activity)

        if activity.clamped:
            logger.info("Clamped adjustment %s", activity)
        else:
            logger.info("Capacity adjusted %s", activity)

        if activity.changed:
            self._channel.publish(updated.desired_capacity)
        return activity

    async def _notify(self, activity: ScalingActivity) -> None:
        """Hand an activity to every listener without blocking the event loop.

        Coroutine listeners are awaited; plain callables run in a worker thread.
        """
        for listener in self._listeners:
            try:
                if inspect.iscoroutinefunction(listener):
                    await listener(activity)
                else:
                    await asyncio.to_thread(listener, activity)
            except Exception:
                logger.exception("Scaling activity listener failed")

    async def _run(self) -> None:
        while True:
            delta = await self._queue.get()
            try:
                activity = self.apply_delta(delta)
                await self._notify(activity)
            finally:
                self._queue.task_done()

    async def stop(self) -> None:
        """Apply queued deltas, then drain orchestrator updates.

        Both stages share one ``drain_timeout`` deadline.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.drain_timeout
        if self._worker is not None:
            try:
                await asyncio.wait_for(self._queue.join(), self.drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Abandoned %d queued deltas for %s", self._queue.qsize(), self._target.service_id
                )
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None
        await self._channel.close(max(0.0, deadline - loop.time()))

    async def __aenter__(self) -> "CapacityController":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
