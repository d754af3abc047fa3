"""Alarms, step-scaling policies, capacity control and simulation."""

from servicescaler.scaling.config import (
    Aggregation,
    AlarmConfig,
    AlarmState,
    Comparator,
    Direction,
    PolicyConfig,
    ServiceConfig,
    StepAdjustment,
    StepTable,
    DEFAULT_SERVICE_CONFIG,
    load_config,
)
from servicescaler.scaling.alarm import (
    Alarm,
    AlarmEvaluator,
    AlarmTransition,
    MetricSample,
)
from servicescaler.scaling.policy import (
    CapacityDelta,
    ScalingPolicy,
    ScalingPolicyEngine,
    build_policies,
)
from servicescaler.scaling.controller import (
    CapacityController,
    ScalableTarget,
    ScalingActivity,
    UpdateChannel,
    apply,
)
from servicescaler.scaling.simulator import (
    PolicySimulator,
    SimulationMetrics,
)

__all__ = [
    "Aggregation",
    "AlarmConfig",
    "AlarmState",
    "Comparator",
    "Direction",
    "PolicyConfig",
    "ServiceConfig",
    "StepAdjustment",
    "StepTable",
    "DEFAULT_SERVICE_CONFIG",
    "load_config",
    "Alarm",
    "AlarmEvaluator",
    "AlarmTransition",
    "MetricSample",
    "CapacityDelta",
    "ScalingPolicy",
    "ScalingPolicyEngine",
    "build_policies",
    "CapacityController",
    "ScalableTarget",
    "ScalingActivity",
    "UpdateChannel",
    "apply",
    "PolicySimulator",
    "SimulationMetrics",
]
