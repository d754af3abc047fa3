"""Service-discovery directory interface."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from servicescaler.errors import TransientIOError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscoveryRecord:
    """Directory entry mapping a service name to one healthy replica."""

    service_name: str
    replica_id: str
    address: str


class DiscoveryDirectory(ABC):
    """External discovery directory.

    Both operations are idempotent: registering an already-registered replica
    and deregistering an absent one succeed without changes.
    """

    @abstractmethod
    async def register(self, service_name: str, replica_id: str, address: str) -> None:
        """Publish a record for the replica."""

    @abstractmethod
    async def deregister(self, service_name: str, replica_id: str) -> None:
        """Remove the replica's record."""


class InMemoryDirectory(DiscoveryDirectory):
    """Directory held in a dict, keyed by (service_name, replica_id)."""

    def __init__(self):
        self._records: dict[tuple[str, str], DiscoveryRecord] = {}
        self._failures_left = 0
        self.calls: list[tuple[str, str, str]] = []

    def fail_next(self, count: int = 1) -> None:
        self._failures_left = count

    def _maybe_fail(self, operation: str) -> None:
        if self._failures_left > 0:
            self._failures_left -= 1
            raise TransientIOError(operation, "injected failure")

    async def register(self, service_name: str, replica_id: str, address: str) -> None:
        self._maybe_fail("register")
        self.calls.append(("register", service_name, replica_id))
        self._records[(service_name, replica_id)] = DiscoveryRecord(service_name, replica_id, address)

    async def deregister(self, service_name: str, replica_id: str) -> None:
        self._maybe_fail("deregister")
        self.calls.append(("deregister", service_name, replica_id))
        self._records.pop((service_name, replica_id), None)

    def records(self, service_name: str) -> list[DiscoveryRecord]:
        return sorted(
            (r for (name, _), r in self._records.items() if name == service_name),
            key=lambda r: r.replica_id,
        )

    def has_record(self, service_name: str, replica_id: str) -> bool:
        return (service_name, replica_id) in self._records
