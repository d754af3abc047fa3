"""Step-scaling policy engine."""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from servicescaler.errors import ConfigurationError
from servicescaler.scaling.alarm import AlarmTransition
from servicescaler.scaling.config import (
    Aggregation,
    AlarmState,
    Direction,
    PolicyConfig,
    ServiceConfig,
    StepTable,
    coerce_enum,
)
from servicescaler.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapacityDelta:
    """Capacity change requested by a policy firing."""

    policy_id: str
    value: int
    metric_deviation: float
    timestamp: datetime

    def __str__(self) -> str:
        return f"{self.policy_id}: {self.value:+d} (deviation={self.metric_deviation:.2f})"


@dataclass
class ScalingPolicy:
    """Runtime state of a step-scaling policy."""

    id: str
    alarm_id: str
    direction: Direction
    aggregation: Aggregation
    cooldown: timedelta
    steps: StepTable
    last_applied_at: datetime | None = None

    @classmethod
    def from_config(cls, config: PolicyConfig) -> "ScalingPolicy":
        """Compile and validate a policy config.

        Raises:
            ConfigurationError: on a bad direction, cooldown or step table.
        """
        direction = coerce_enum(Direction, config.direction, "direction")
        aggregation = coerce_enum(Aggregation, config.aggregation, "aggregation")
        if config.cooldown_seconds < 0:
            raise ConfigurationError(f"policy {config.id}: cooldown must be >= 0")

        steps = StepTable(config.steps)
        for step in steps:
            if direction is Direction.UP and step.delta < 0:
                raise ConfigurationError(f"policy {config.id}: scale-up step with negative delta")
            if direction is Direction.DOWN and step.delta > 0:
                raise ConfigurationError(f"policy {config.id}: scale-down step with positive delta")

        return cls(
            id=config.id,
            alarm_id=config.alarm_id,
            direction=direction,
            aggregation=aggregation,
            cooldown=config.cooldown,
            steps=steps,
        )

    def in_cooldown(self, now: datetime) -> bool:
        """Check whether the policy fired less than ``cooldown`` ago."""
        if self.last_applied_at is None:
            return False
        return now - self.last_applied_at < self.cooldown

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "alarm_id": self.alarm_id,
            "direction": self.direction.value,
            "aggregation": self.aggregation.value,
            "cooldown_seconds": self.cooldown.total_seconds(),
            "steps": self.steps.to_list(),
            "last_applied_at": self.last_applied_at.isoformat() if self.last_applied_at else None,
        }


def build_policies(config: ServiceConfig) -> list[ScalingPolicy]:
    """Compile every policy in ``config``.

    If any policy is invalid, or not bound 1:1 to a configured alarm, the
    whole set is rejected and an empty list is returned: the service then
    runs without autoscaling until the configuration is corrected.
    """
    policies = []
    bound_alarms: set[str] = set()
    try:
        for policy_config in config.policies:
            if config.get_alarm(policy_config.alarm_id) is None:
                raise ConfigurationError(
                    f"policy {policy_config.id}: unknown alarm {policy_config.alarm_id!r}"
                )
            if policy_config.alarm_id in bound_alarms:
                raise ConfigurationError(
                    f"policy {policy_config.id}: alarm {policy_config.alarm_id!r} already bound"
                )
            bound_alarms.add(policy_config.alarm_id)
            policies.append(ScalingPolicy.from_config(policy_config))
    except (ConfigurationError, TypeError, ValueError) as exc:
        logger.error("Rejected scaling policies for %s, autoscaling disabled: %s", config.service_id, exc)
        return []
    return policies


class ScalingPolicyEngine:
    """Maps alarm transitions to capacity deltas through step tables.

    Owns every ScalingPolicy. The cooldown check and the ``last_applied_at``
    write for one policy happen under that policy's lock.
    """

    def __init__(self, policies: Iterable[ScalingPolicy] = ()):
        self._policies: dict[str, ScalingPolicy] = {}
        self._by_alarm: dict[str, str] = {}
        self._locks: dict[str, threading.Lock] = {}
        self.suppressed = 0
        for policy in policies:
            self.add_policy(policy)

    def add_policy(self, policy: ScalingPolicy) -> None:
        bound = self._by_alarm.get(policy.alarm_id)
        if bound is not None and bound != policy.id:
            raise ConfigurationError(
                f"alarm {policy.alarm_id!r} already triggers policy {bound!r}"
            )
        self._policies[policy.id] = policy
        self._by_alarm[policy.alarm_id] = policy.id
        self._locks.setdefault(policy.id, threading.Lock())

    @property
    def enabled(self) -> bool:
        return bool(self._policies)

    def get_policy(self, policy_id: str) -> ScalingPolicy:
        return self._policies[policy_id]

    def policy_for_alarm(self, alarm_id: str) -> ScalingPolicy | None:
        policy_id = self._by_alarm.get(alarm_id)
        return self._policies.get(policy_id) if policy_id else None

    def handle(
        self,
        transition: AlarmTransition,
        current_metric_value: float,
        now: datetime | None = None,
    ) -> CapacityDelta | None:
        """Route a transition to the policy bound to its alarm."""
        policy = self.policy_for_alarm(transition.alarm_id)
        if policy is None:
            return None
        return self.on_alarm(policy, transition, current_metric_value, now)

    def on_alarm(
        self,
        policy: ScalingPolicy,
        transition: AlarmTransition,
        current_metric_value: float,
        now: datetime | None = None,
    ) -> CapacityDelta | None:
        """Evaluate one alarm transition against ``policy``.

        Args:
            policy: Policy bound to the transition's alarm
            transition: The alarm edge
            current_metric_value: Metric value the deviation is computed from
            now: Current time (for cooldown tracking)

        Returns:
            CapacityDelta if a step fired, else None
        """
        if transition.to_state is not AlarmState.ALARM:
            return None

        now = now or utcnow()
        lock = self._locks.setdefault(policy.id, threading.Lock())
        with lock:
            if policy.in_cooldown(now):
                self.suppressed += 1
                logger.debug(
                    "Policy %s in cooldown until %s",
                    policy.id, (policy.last_applied_at + policy.cooldown).isoformat(),
                )
                return None

            deviation = current_metric_value - transition.threshold
            step = policy.steps.lookup(deviation)
            if step is None:
                logger.info("Policy %s: no step covers deviation %.2f", policy.id, deviation)
                return None

            policy.last_applied_at = now

        delta = CapacityDelta(
            policy_id=policy.id,
            value=step.delta,
            metric_deviation=deviation,
            timestamp=now,
        )
        logger.info("Policy fired %s", delta)
        return delta

    def snapshot(self) -> list[dict]:
        return [policy.to_dict() for policy in self._policies.values()]
