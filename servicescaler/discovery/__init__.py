"""Health-driven service discovery registration."""

from servicescaler.discovery.registry import HealthRegistry, ReplicaHealth, ReplicaState

__all__ = [
    "HealthRegistry",
    "ReplicaHealth",
    "ReplicaState",
]
