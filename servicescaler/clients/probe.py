"""Replica health probes."""

from abc import ABC, abstractmethod


class HealthProbe(ABC):
    """Checks whether one replica is healthy."""

    @abstractmethod
    async def check(self, replica_id: str, address: str) -> bool:
        """Return True if the replica answered its health check."""


class StaticHealthProbe(HealthProbe):
    """Probe whose answers are set by the caller. Unknown replicas are healthy."""

    def __init__(self, results: dict[str, bool] | None = None):
        self.results = dict(results or {})
        self.checked: list[str] = []

    def set_health(self, replica_id: str, healthy: bool) -> None:
        self.results[replica_id] = healthy

    async def check(self, replica_id: str, address: str) -> bool:
        self.checked.append(replica_id)
        return self.results.get(replica_id, True)
