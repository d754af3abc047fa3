"""Orchestrator interface: desired-count updates and replica listing."""

import asyncio
import logging
from abc import ABC, abstractmethod

from servicescaler.errors import TransientIOError

logger = logging.getLogger(__name__)


class Orchestrator(ABC):
    """External container orchestrator running the service's replicas."""

    @abstractmethod
    async def set_desired_count(self, service_id: str, count: int) -> None:
        """Ask the orchestrator to converge the service to ``count`` replicas.

        Raises:
            TransientIOError: if the request could not be delivered.
        """

    @abstractmethod
    async def list_replicas(self, service_id: str) -> list[str]:
        """Return ids of the replicas currently running for the service."""

    @abstractmethod
    async def replica_address(self, service_id: str, replica_id: str) -> str:
        """Return the network address a replica serves on."""


class InMemoryOrchestrator(Orchestrator):
    """Orchestrator kept in process memory.

    Used by tests and the simulator. Failures can be injected with
    :meth:`fail_next` and slow updates with ``update_delay``.
    """

    def __init__(self, update_delay: float = 0.0):
        self.update_delay = update_delay
        self.desired: dict[str, int] = {}
        self.updates: list[tuple[str, int]] = []
        self._replicas: dict[str, dict[str, str]] = {}
        self._failures_left = 0

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` calls raise TransientIOError."""
        self._failures_left = count

    def _maybe_fail(self, operation: str) -> None:
        if self._failures_left > 0:
            self._failures_left -= 1
            raise TransientIOError(operation, "injected failure")

    def add_replica(self, service_id: str, replica_id: str, address: str) -> None:
        self._replicas.setdefault(service_id, {})[replica_id] = address

    def terminate_replica(self, service_id: str, replica_id: str) -> None:
        self._replicas.get(service_id, {}).pop(replica_id, None)

    async def set_desired_count(self, service_id: str, count: int) -> None:
        if self.update_delay:
            await asyncio.sleep(self.update_delay)
        self._maybe_fail("set_desired_count")
        self.desired[service_id] = count
        self.updates.append((service_id, count))
        logger.debug("Desired count for %s set to %d", service_id, count)

    async def list_replicas(self, service_id: str) -> list[str]:
        self._maybe_fail("list_replicas")
        return sorted(self._replicas.get(service_id, {}))

    async def replica_address(self, service_id: str, replica_id: str) -> str:
        self._maybe_fail("replica_address")
        try:
            return self._replicas[service_id][replica_id]
        except KeyError:
            raise TransientIOError("replica_address", f"unknown replica {replica_id}") from None
