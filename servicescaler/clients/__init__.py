"""Interfaces to external collaborators, with in-memory implementations."""

from servicescaler.clients.directory import DiscoveryDirectory, DiscoveryRecord, InMemoryDirectory
from servicescaler.clients.metrics import InMemoryMetricSource, MetricSource
from servicescaler.clients.orchestrator import InMemoryOrchestrator, Orchestrator
from servicescaler.clients.probe import HealthProbe, StaticHealthProbe

__all__ = [
    "DiscoveryDirectory",
    "DiscoveryRecord",
    "InMemoryDirectory",
    "MetricSource",
    "InMemoryMetricSource",
    "Orchestrator",
    "InMemoryOrchestrator",
    "HealthProbe",
    "StaticHealthProbe",
]
