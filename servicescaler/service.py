"""Control loop for one scaled, discoverable service.

Wires MetricSource -> AlarmEvaluator -> ScalingPolicyEngine ->
CapacityController -> orchestrator, and runs the HealthRegistry beside it.
Every alarm gets its own periodic evaluation task, so each alarm has exactly
one writer. Health probing and replica reconciliation run as separate
periodic tasks.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable

from servicescaler.clients.directory import DiscoveryDirectory
from servicescaler.clients.metrics import MetricSource
from servicescaler.clients.orchestrator import Orchestrator
from servicescaler.clients.probe import HealthProbe
from servicescaler.discovery.registry import HealthRegistry, ReplicaState
from servicescaler.scaling.alarm import AlarmEvaluator, AlarmTransition
from servicescaler.scaling.config import AlarmConfig, ServiceConfig
from servicescaler.scaling.controller import CapacityController, ScalingActivity
from servicescaler.scaling.policy import CapacityDelta, ScalingPolicyEngine, build_policies
from servicescaler.utils.retry import MaxRetriesExceeded, call_with_retry
from servicescaler.utils.time import utcnow

logger = logging.getLogger(__name__)


class ControlLoop:
    """Runs autoscaling and discovery registration for one service.

    Usage:
        async with ControlLoop(config, orchestrator, metrics, directory, probe) as loop:
            await asyncio.sleep(3600)
    """

    def __init__(
        self,
        config: ServiceConfig,
        orchestrator: Orchestrator,
        metrics: MetricSource,
        directory: DiscoveryDirectory,
        probe: HealthProbe,
        activity_listener: Callable[[ScalingActivity], None] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self._orchestrator = orchestrator
        self._metrics = metrics
        self._probe = probe
        self._clock = clock

        self.evaluator = AlarmEvaluator(config.alarms)
        self.engine = ScalingPolicyEngine(build_policies(config))
        self.controller = CapacityController.from_config(config, orchestrator, clock=clock)
        if activity_listener is not None:
            self.controller.add_listener(activity_listener)
        self.registry = HealthRegistry(
            config.service_name,
            directory,
            failure_threshold=config.failure_threshold,
            retry_config=config.retry,
        )

        self._tasks: list[asyncio.Task] = []
        self.started_at: datetime | None = None

    @property
    def autoscaling_enabled(self) -> bool:
        return self.engine.enabled

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def evaluate_alarm(self, alarm: AlarmConfig) -> CapacityDelta | None:
        """Sample the alarm's metric once and act on any transition."""
        try:
            sample = await call_with_retry(
                self._metrics.query,
                alarm.metric_name,
                alarm.dimensions,
                alarm.period,
                alarm.aggregation,
                config=self.config.retry,
            )
        except MaxRetriesExceeded as exc:
            logger.error("Metric query for %s failed: %s", alarm.id, exc.last_exception)
            return None
        if sample is None:
            return None

        transition = self.evaluator.observe(alarm.id, sample)
        if transition is None:
            return None
        return await self._on_transition(transition, sample.value)

    async def _on_transition(self, transition: AlarmTransition, value: float) -> CapacityDelta | None:
        delta = self.engine.handle(transition, value, now=self._clock())
        if delta is not None:
            await self.controller.submit(delta)
        return delta

    async def probe_replicas(self) -> dict[str, ReplicaState]:
        """Probe every tracked replica once and record the results."""
        states = {}
        for replica_id in sorted(self.registry.replica_ids()):
            health = self.registry.get(replica_id)
            if health is None:
                continue
            try:
                healthy = await self._probe.check(replica_id, health.address)
            except (ConnectionError, TimeoutError, OSError) as exc:
                logger.info("Probe for %s errored, counting as failure: %s", replica_id, exc)
                healthy = False
            state = await self.registry.record_probe(replica_id, healthy)
            if state is not None:
                states[replica_id] = state
        return states

    async def reconcile_replicas(self) -> bool:
        """Seed and garbage-collect replica health from the orchestrator's list."""
        service_id = self.config.service_id
        try:
            replica_ids = await call_with_retry(
                self._orchestrator.list_replicas, service_id, config=self.config.retry
            )
            live = {}
            for replica_id in replica_ids:
                health = self.registry.get(replica_id)
                if health is not None:
                    live[replica_id] = health.address
                else:
                    live[replica_id] = await call_with_retry(
                        self._orchestrator.replica_address,
                        service_id,
                        replica_id,
                        config=self.config.retry,
                    )
        except MaxRetriesExceeded as exc:
            logger.error("Replica listing for %s failed: %s", service_id, exc.last_exception)
            return False
        await self.registry.reconcile(live)
        return True

    async def _every(self, interval: float, step: Callable[[], Awaitable], name: str) -> None:
        while True:
            try:
                await step()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic task %s failed", name)
            await asyncio.sleep(interval)

    async def start(self) -> None:
        if self._tasks:
            return
        self.started_at = self._clock()
        await self.controller.start()

        if self.autoscaling_enabled:
            for alarm in self.config.alarms:
                self._spawn(alarm.period_seconds, lambda a=alarm: self.evaluate_alarm(a), f"alarm-{alarm.id}")
        else:
            logger.warning("Autoscaling disabled for %s", self.config.service_id)

        self._spawn(self.config.reconcile_interval_seconds, self.reconcile_replicas, "reconcile")
        self._spawn(self.config.probe_interval_seconds, self.probe_replicas, "probe")
        logger.info("Control loop started for %s", self.config.service_id)

    def _spawn(self, interval: float, step: Callable[[], Awaitable], name: str) -> None:
        self._tasks.append(asyncio.create_task(self._every(interval, step, name), name=name))

    async def stop(self) -> None:
        """Cancel periodic tasks, then drain the controller's pending updates."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.controller.stop()
        logger.info("Control loop stopped for %s", self.config.service_id)

    async def __aenter__(self) -> "ControlLoop":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    def status(self) -> dict:
        """Snapshot of capacity, alarms, policies and replica health."""
        return {
            "service_id": self.config.service_id,
            "service_name": self.config.service_name,
            "running": self.running,
            "autoscaling_enabled": self.autoscaling_enabled,
            "target": self.controller.snapshot().to_dict(),
            "acknowledged_capacity": self.controller.channel.acknowledged,
            "alarms": self.evaluator.snapshot(),
            "policies": self.engine.snapshot(),
            "replicas": self.registry.snapshot(),
            "stale_samples": self.evaluator.stale_samples,
            "suppressed_by_cooldown": self.engine.suppressed,
        }
