"""Replay a metric series through the scaling pipeline.

Runs alarms, step policies and capacity clamping synchronously over a
historical or synthetic series, without an orchestrator, so a
configuration can be checked before it goes live.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd

from servicescaler.scaling.alarm import AlarmEvaluator, MetricSample
from servicescaler.scaling.config import ServiceConfig
from servicescaler.scaling.controller import ScalableTarget, apply
from servicescaler.scaling.policy import ScalingPolicyEngine, build_policies


@dataclass
class SimulationMetrics:
    """Metrics from a simulation run."""

    # Capacity metrics
    avg_capacity: float
    max_capacity: int
    min_capacity: int

    # Scaling metrics
    scaling_events: int
    scale_out_events: int
    scale_in_events: int
    clamped_events: int
    suppressed_by_cooldown: int
    alarm_transitions: int

    autoscaling_enabled: bool = True

    # Time series
    capacity_over_time: list = field(default_factory=list)
    deltas_over_time: list = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"Simulation Results:\n"
            f"  Avg Capacity: {self.avg_capacity:.2f} (min {self.min_capacity}, max {self.max_capacity})\n"
            f"  Scaling Events: {self.scaling_events} "
            f"(out: {self.scale_out_events}, in: {self.scale_in_events}, clamped: {self.clamped_events})\n"
            f"  Cooldown Suppressions: {self.suppressed_by_cooldown}\n"
            f"  Alarm Transitions: {self.alarm_transitions}"
        )

    def to_dict(self) -> dict:
        return {
            "avg_capacity": self.avg_capacity,
            "max_capacity": self.max_capacity,
            "min_capacity": self.min_capacity,
            "scaling_events": self.scaling_events,
            "scale_out_events": self.scale_out_events,
            "scale_in_events": self.scale_in_events,
            "clamped_events": self.clamped_events,
            "suppressed_by_cooldown": self.suppressed_by_cooldown,
            "alarm_transitions": self.alarm_transitions,
            "autoscaling_enabled": self.autoscaling_enabled,
        }


class PolicySimulator:
    """Simulate step-scaling behaviour for a service configuration.

    Every alarm in the configuration sees the same metric series, which
    matches the common case of a high/low alarm pair on one metric.
    """

    def __init__(self, config: ServiceConfig | None = None):
        """Initialize simulator.

        Args:
            config: Service configuration
        """
        self.config = config or ServiceConfig()

    @property
    def period(self) -> timedelta:
        """Sampling interval: the shortest alarm period."""
        if not self.config.alarms:
            return timedelta(seconds=60)
        return min(alarm.period for alarm in self.config.alarms)

    def simulate(
        self,
        values: pd.Series | np.ndarray | list,
        timestamps: pd.DatetimeIndex | list | None = None,
        initial_capacity: int | None = None,
    ) -> SimulationMetrics:
        """Run simulation over a metric series.

        Args:
            values: Time series of aggregated metric values
            timestamps: Timestamps for each value (generated if None)
            initial_capacity: Starting desired count (config default if None)

        Returns:
            SimulationMetrics with results

        Raises:
            ValueError: if timestamps and values differ in length
        """
        values = np.asarray(values, dtype=float)
        n_periods = len(values)

        if timestamps is None:
            start = datetime(2023, 1, 1, tzinfo=timezone.utc)
            timestamps = [start + i * self.period for i in range(n_periods)]
        else:
            timestamps = [pd.Timestamp(ts).to_pydatetime() for ts in timestamps]
            if len(timestamps) != n_periods:
                raise ValueError(
                    f"got {len(timestamps)} timestamps for {n_periods} values"
                )

        evaluator = AlarmEvaluator(self.config.alarms)
        policies = build_policies(self.config)
        engine = ScalingPolicyEngine(policies)

        target = ScalableTarget.from_config(self.config)
        if initial_capacity is not None:
            target = target.with_desired(initial_capacity)

        capacity = []
        deltas = []
        transitions = 0
        scale_out = scale_in = clamped = 0

        for value, ts in zip(values, timestamps):
            sample = MetricSample(timestamp=ts, value=float(value), window=self.period)
            period_delta = 0
            for alarm_id in evaluator.alarm_ids():
                transition = evaluator.observe(alarm_id, sample)
                if transition is None:
                    continue
                transitions += 1
                delta = engine.handle(transition, sample.value, now=ts)
                if delta is None:
                    continue

                updated = apply(target, delta)
                if updated.desired_capacity != target.desired_capacity + delta.value:
                    clamped += 1
                if updated.desired_capacity > target.desired_capacity:
                    scale_out += 1
                elif updated.desired_capacity < target.desired_capacity:
                    scale_in += 1
                period_delta += updated.desired_capacity - target.desired_capacity
                target = updated

            capacity.append(target.desired_capacity)
            deltas.append(period_delta)

        capacity_arr = np.array(capacity) if capacity else np.array([target.desired_capacity])

        return SimulationMetrics(
            avg_capacity=float(np.mean(capacity_arr)),
            max_capacity=int(np.max(capacity_arr)),
            min_capacity=int(np.min(capacity_arr)),
            scaling_events=scale_out + scale_in,
            scale_out_events=scale_out,
            scale_in_events=scale_in,
            clamped_events=clamped,
            suppressed_by_cooldown=engine.suppressed,
            alarm_transitions=transitions,
            autoscaling_enabled=engine.enabled,
            capacity_over_time=capacity,
            deltas_over_time=deltas,
        )

    def compare_configs(
        self,
        values: pd.Series | np.ndarray | list,
        configs: dict[str, ServiceConfig],
        timestamps: pd.DatetimeIndex | list | None = None,
    ) -> pd.DataFrame:
        """Compare several service configurations on the same series.

        Args:
            values: Time series of aggregated metric values
            configs: Dict of config name -> ServiceConfig
            timestamps: Timestamps for each value

        Returns:
            DataFrame with one row of metrics per config
        """
        results = []

        for name, config in configs.items():
            metrics = PolicySimulator(config).simulate(values, timestamps)
            results.append({"config": name, **metrics.to_dict()})

        return pd.DataFrame(results).set_index("config")
