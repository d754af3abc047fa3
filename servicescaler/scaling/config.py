"""Configuration for alarms, step-scaling policies and the scaled service."""

import bisect
import json
import math
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator

from servicescaler.errors import ConfigurationError
from servicescaler.utils.retry import RetryConfig


class Comparator(str, Enum):
    """Alarm comparison operators."""

    LESS_THAN_OR_EQUAL = "<="
    GREATER_THAN_OR_EQUAL = ">="

    @classmethod
    def _missing_(cls, value):
        aliases = {
            "≤": cls.LESS_THAN_OR_EQUAL,
            "lessthanorequaltothreshold": cls.LESS_THAN_OR_EQUAL,
            "≥": cls.GREATER_THAN_OR_EQUAL,
            "greaterthanorequaltothreshold": cls.GREATER_THAN_OR_EQUAL,
        }
        return aliases.get(str(value).strip().lower())

    def breached(self, value: float, threshold: float) -> bool:
        """Whether ``value`` breaches ``threshold`` under this comparator."""
        if self is Comparator.LESS_THAN_OR_EQUAL:
            return value <= threshold
        return value >= threshold


class AlarmState(str, Enum):
    """Alarm states."""

    OK = "OK"
    ALARM = "ALARM"


class Direction(str, Enum):
    """Direction a scaling policy moves capacity in."""

    UP = "up"
    DOWN = "down"


class Aggregation(str, Enum):
    """Statistic applied to raw datapoints within a metric window."""

    AVERAGE = "Average"
    MIN = "Min"
    MAX = "Max"

    @classmethod
    def _missing_(cls, value):
        aliases = {
            "average": cls.AVERAGE,
            "avg": cls.AVERAGE,
            "min": cls.MIN,
            "minimum": cls.MIN,
            "max": cls.MAX,
            "maximum": cls.MAX,
        }
        return aliases.get(str(value).strip().lower())


def coerce_enum(enum_cls, value, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ConfigurationError(f"invalid {field_name}: {value!r}") from None


@dataclass(frozen=True)
class StepAdjustment:
    """One row of a step table.

    Covers the half-open interval ``[lower_bound, upper_bound)`` of metric
    deviation from the alarm threshold. ``None`` means unbounded.
    """

    lower_bound: float | None = None
    upper_bound: float | None = None
    delta: int = 0

    def __post_init__(self):
        for name in ("lower_bound", "upper_bound"):
            bound = getattr(self, name)
            if bound is None:
                continue
            if isinstance(bound, bool) or not isinstance(bound, (int, float)):
                raise ConfigurationError(f"{name} must be a number, got {bound!r}")
            if math.isnan(bound):
                raise ConfigurationError(f"{name} must not be NaN")
        if isinstance(self.delta, bool) or not isinstance(self.delta, int):
            raise ConfigurationError(f"delta must be an integer, got {self.delta!r}")
        if self.lower >= self.upper:
            raise ConfigurationError(
                f"step lower bound {self.lower} must be < upper bound {self.upper}"
            )

    @property
    def lower(self) -> float:
        return -math.inf if self.lower_bound is None else float(self.lower_bound)

    @property
    def upper(self) -> float:
        return math.inf if self.upper_bound is None else float(self.upper_bound)

    def contains(self, deviation: float) -> bool:
        return self.lower <= deviation < self.upper

    def to_dict(self) -> dict:
        return {
            "lower_bound": self.lower_bound,
            "upper_bound": self.upper_bound,
            "delta": self.delta,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StepAdjustment":
        """Build a step from either snake_case keys or the orchestrator's names."""
        lower = data.get("lower_bound", data.get("MetricIntervalLowerBound"))
        upper = data.get("upper_bound", data.get("MetricIntervalUpperBound"))
        delta = data.get("delta", data.get("ScalingAdjustment"))
        if delta is None:
            raise ConfigurationError(f"step is missing a delta: {data!r}")
        return cls(
            lower_bound=_to_bound(lower, "lower_bound"),
            upper_bound=_to_bound(upper, "upper_bound"),
            delta=_to_delta(delta),
        )


def _coerce_step(step) -> StepAdjustment:
    if isinstance(step, StepAdjustment):
        return step
    if not isinstance(step, dict):
        raise ConfigurationError(f"step must be a mapping, got {step!r}")
    return StepAdjustment.from_dict(step)


def _to_bound(value, name: str) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from exc


def _to_delta(value) -> int:
    """Parse a step delta, rejecting values that would be truncated."""
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"delta must be an integer, got {value!r}") from exc
    if isinstance(value, bool) or not number.is_integer():
        raise ConfigurationError(f"delta must be an integer, got {value!r}")
    return int(number)


class StepTable:
    """Sorted, contiguous, non-overlapping step adjustments.

    Validation happens once at construction; lookups bisect over the lower
    bounds so a deviation resolves in O(log n). A deviation sitting exactly on
    a shared boundary belongs to the step whose lower bound equals it.
    """

    def __init__(self, steps: Iterable[StepAdjustment | dict]):
        coerced = [_coerce_step(s) for s in steps]
        ordered = sorted(coerced, key=lambda s: (s.lower, s.upper))
        self._validate(ordered)
        self._steps = tuple(ordered)
        self._lowers = [s.lower for s in ordered]

    @staticmethod
    def _validate(steps: list[StepAdjustment]):
        if not steps:
            raise ConfigurationError("step table must contain at least one step")
        for prev, nxt in zip(steps, steps[1:]):
            if prev.upper > nxt.lower:
                raise ConfigurationError(
                    f"overlapping steps: [{prev.lower}, {prev.upper}) and "
                    f"[{nxt.lower}, {nxt.upper})"
                )
            if prev.upper < nxt.lower:
                raise ConfigurationError(
                    f"gap between steps: [{prev.lower}, {prev.upper}) and "
                    f"[{nxt.lower}, {nxt.upper})"
                )

    def lookup(self, deviation: float) -> StepAdjustment | None:
        """Return the step covering ``deviation``, or None if no step does."""
        if math.isnan(deviation):
            return None
        idx = bisect.bisect_right(self._lowers, deviation) - 1
        if idx < 0:
            return None
        step = self._steps[idx]
        return step if deviation < step.upper else None

    @property
    def steps(self) -> tuple[StepAdjustment, ...]:
        return self._steps

    def __iter__(self) -> Iterator[StepAdjustment]:
        return iter(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def to_list(self) -> list[dict]:
        return [s.to_dict() for s in self._steps]


@dataclass
class AlarmConfig:
    """Configuration for a threshold alarm.

    Attributes:
        id: Unique alarm id
        metric_name: Metric the alarm watches (e.g. CPUUtilization)
        comparator: Comparison between sample value and threshold
        threshold: Threshold the metric is compared against
        evaluation_periods: Consecutive breaching periods before ALARM
        period_seconds: Length of one metric window
        aggregation: Statistic requested from the metric API
        dimensions: Metric dimensions (e.g. ServiceName, ClusterName)
    """

    id: str
    metric_name: str
    comparator: Comparator
    threshold: float
    evaluation_periods: int = 1
    period_seconds: float = 60.0
    aggregation: Aggregation = Aggregation.AVERAGE
    dimensions: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.comparator = coerce_enum(Comparator, self.comparator, "comparator")
        self.aggregation = coerce_enum(Aggregation, self.aggregation, "aggregation")
        if not self.id:
            raise ConfigurationError("alarm id must not be empty")
        if self.evaluation_periods < 1:
            raise ConfigurationError("evaluation_periods must be at least 1")
        if self.period_seconds <= 0:
            raise ConfigurationError("period_seconds must be positive")
        if not math.isfinite(self.threshold):
            raise ConfigurationError("threshold must be finite")

    @property
    def period(self) -> timedelta:
        return timedelta(seconds=self.period_seconds)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "metric_name": self.metric_name,
            "comparator": self.comparator.value,
            "threshold": self.threshold,
            "evaluation_periods": self.evaluation_periods,
            "period_seconds": self.period_seconds,
            "aggregation": self.aggregation.value,
            "dimensions": dict(self.dimensions),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AlarmConfig":
        return cls(**data)


@dataclass
class PolicyConfig:
    """Configuration for a step-scaling policy.

    Step tables and direction are validated when the policy is loaded into
    the policy engine, so a bad policy can be rejected without taking the
    rest of the service down with it.

    Attributes:
        id: Unique policy id
        alarm_id: The single alarm that triggers this policy
        direction: "up" or "down"
        steps: Step adjustments, as StepAdjustment or dicts
        cooldown_seconds: Minimum time between two firings of this policy
        aggregation: Metric aggregation the step table is expressed in
    """

    id: str
    alarm_id: str
    direction: str
    steps: list = field(default_factory=list)
    cooldown_seconds: float = 60.0
    aggregation: str = Aggregation.AVERAGE.value

    @property
    def cooldown(self) -> timedelta:
        return timedelta(seconds=self.cooldown_seconds)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "alarm_id": self.alarm_id,
            "direction": getattr(self.direction, "value", self.direction),
            "steps": [
                s.to_dict() if isinstance(s, StepAdjustment) else dict(s)
                for s in self.steps
            ],
            "cooldown_seconds": self.cooldown_seconds,
            "aggregation": getattr(self.aggregation, "value", self.aggregation),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PolicyConfig":
        return cls(**data)


def default_alarms(service_id: str, cluster_name: str) -> list[AlarmConfig]:
    """High/low CPU alarm pair scoped to one service in one cluster."""
    dimensions = {"ServiceName": service_id, "ClusterName": cluster_name}
    return [
        AlarmConfig(
            id="high-cpu",
            metric_name="CPUUtilization",
            comparator=Comparator.GREATER_THAN_OR_EQUAL,
            threshold=70.0,
            dimensions=dict(dimensions),
        ),
        AlarmConfig(
            id="low-cpu",
            metric_name="CPUUtilization",
            comparator=Comparator.LESS_THAN_OR_EQUAL,
            threshold=20.0,
            dimensions=dict(dimensions),
        ),
    ]


def default_policies() -> list[PolicyConfig]:
    """Scale-up and scale-down policies bound to the default CPU alarms."""
    return [
        PolicyConfig(
            id="scale-up",
            alarm_id="high-cpu",
            direction=Direction.UP.value,
            steps=[
                StepAdjustment(lower_bound=0, upper_bound=15, delta=1),
                StepAdjustment(lower_bound=15, upper_bound=25, delta=2),
                StepAdjustment(lower_bound=25, delta=3),
            ],
        ),
        PolicyConfig(
            id="scale-down",
            alarm_id="low-cpu",
            direction=Direction.DOWN.value,
            steps=[StepAdjustment(upper_bound=0, delta=-1)],
        ),
    ]


@dataclass
class ServiceConfig:
    """Configuration for one scaled, discoverable service.

    Attributes:
        service_id: Orchestrator identity of the service
        service_name: Name the service is published under in discovery
        cluster_name: Cluster the service runs in, used as a metric dimension
        min_capacity: Minimum replicas (cannot scale below)
        max_capacity: Maximum replicas (cannot scale above)
        desired_capacity: Initial desired replica count
        alarms: Threshold alarms feeding the policies; defaults to the CPU pair
        policies: Step-scaling policies, one per alarm
        failure_threshold: Consecutive failed probes before deregistration
        probe_interval_seconds: Time between health probe rounds
        reconcile_interval_seconds: Time between replica list reconciliations
        drain_timeout_seconds: Bound on flushing orchestrator updates at shutdown
        retry: Backoff settings for external calls
    """

    service_id: str = "nginx"
    service_name: str = "nginx"
    cluster_name: str = "default"

    # Capacity limits
    min_capacity: int = 2
    max_capacity: int = 10
    desired_capacity: int = 2

    alarms: list[AlarmConfig] | None = None
    policies: list[PolicyConfig] = field(default_factory=default_policies)

    # Health
    failure_threshold: int = 1
    probe_interval_seconds: float = 10.0
    reconcile_interval_seconds: float = 30.0

    drain_timeout_seconds: float = 5.0
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self):
        """Coerce nested dicts and validate configuration."""
        if self.alarms is None:
            self.alarms = default_alarms(self.service_id, self.cluster_name)
        self.alarms = [
            a if isinstance(a, AlarmConfig) else AlarmConfig.from_dict(a)
            for a in self.alarms
        ]
        self.policies = [
            p if isinstance(p, PolicyConfig) else PolicyConfig.from_dict(p)
            for p in self.policies
        ]
        if isinstance(self.retry, dict):
            self.retry = RetryConfig(**self.retry)
        self._validate()

    def _validate(self):
        """Validate configuration parameters."""
        if not self.service_id:
            raise ConfigurationError("service_id must not be empty")
        if self.min_capacity < 0:
            raise ConfigurationError("min_capacity must be >= 0")
        if self.max_capacity < self.min_capacity:
            raise ConfigurationError("max_capacity must be >= min_capacity")
        if not self.min_capacity <= self.desired_capacity <= self.max_capacity:
            raise ConfigurationError(
                "desired_capacity must be between min_capacity and max_capacity"
            )
        if self.failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be at least 1")
        if self.probe_interval_seconds <= 0 or self.reconcile_interval_seconds <= 0:
            raise ConfigurationError("probe and reconcile intervals must be positive")
        if self.drain_timeout_seconds < 0:
            raise ConfigurationError("drain_timeout_seconds must be >= 0")
        alarm_ids = [a.id for a in self.alarms]
        if len(alarm_ids) != len(set(alarm_ids)):
            raise ConfigurationError("alarm ids must be unique")

    def get_alarm(self, alarm_id: str) -> AlarmConfig | None:
        return next((a for a in self.alarms if a.id == alarm_id), None)

    def to_dict(self) -> dict:
        """Convert config to dictionary.

        Returns:
            Configuration as dictionary
        """
        return {
            "service_id": self.service_id,
            "service_name": self.service_name,
            "cluster_name": self.cluster_name,
            "min_capacity": self.min_capacity,
            "max_capacity": self.max_capacity,
            "desired_capacity": self.desired_capacity,
            "alarms": [a.to_dict() for a in self.alarms],
            "policies": [p.to_dict() for p in self.policies],
            "failure_threshold": self.failure_threshold,
            "probe_interval_seconds": self.probe_interval_seconds,
            "reconcile_interval_seconds": self.reconcile_interval_seconds,
            "drain_timeout_seconds": self.drain_timeout_seconds,
            "retry": self.retry.to_dict(),
        }

    @classmethod
    def from_dict(cls, config_dict: dict) -> "ServiceConfig":
        """Create config from dictionary.

        Args:
            config_dict: Configuration dictionary

        Returns:
            ServiceConfig instance
        """
        return cls(**config_dict)


def load_config(path: str | Path) -> ServiceConfig:
    """Load and validate a service configuration from a JSON file."""
    with open(path, encoding="utf-8") as fh:
        return ServiceConfig.from_dict(json.load(fh))


DEFAULT_SERVICE_CONFIG = ServiceConfig()
