"""Health-driven discovery registry.

Each replica moves through::

    UNREGISTERED -> REGISTERED <-> DEGRADED -> DEREGISTERED

The first successful probe publishes a discovery record. Failed probes
accumulate; once ``failure_threshold`` consecutive failures are reached the
record is removed before the state changes. A success at any point before
that resets the failure count to zero.

Probing and reconciliation run as separate tasks; every mutation goes
through one registry lock so each replica record still has a single writer.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Mapping

from servicescaler.clients.directory import DiscoveryDirectory
from servicescaler.errors import ConfigurationError
from servicescaler.utils.retry import MaxRetriesExceeded, RetryConfig, call_with_retry

logger = logging.getLogger(__name__)


class ReplicaState(str, Enum):
    """Registration states of one replica instance."""

    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    DEGRADED = "degraded"
    DEREGISTERED = "deregistered"


@dataclass
class ReplicaHealth:
    """Health bookkeeping for one replica. Written only by HealthRegistry."""

    replica_id: str
    address: str
    consecutive_failures: int = 0
    registered: bool = False
    state: ReplicaState = ReplicaState.UNREGISTERED

    def to_dict(self) -> dict:
        return {
            "replica_id": self.replica_id,
            "address": self.address,
            "consecutive_failures": self.consecutive_failures,
            "registered": self.registered,
            "state": self.state.value,
        }


class HealthRegistry:
    """Keeps the discovery directory in line with replica health.

    Args:
        service_name: Name records are published under
        directory: External discovery directory
        failure_threshold: Consecutive failed probes before deregistration
        retry_config: Backoff for directory calls
    """

    def __init__(
        self,
        service_name: str,
        directory: DiscoveryDirectory,
        failure_threshold: int = 1,
        retry_config: RetryConfig | None = None,
    ):
        if failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be at least 1")
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self._directory = directory
        self._retry = retry_config or RetryConfig()
        self._replicas: dict[str, ReplicaHealth] = {}
        # Replicas whose record removal failed; retried on every reconcile.
        self._pending_removals: set[str] = set()
        self._lock = asyncio.Lock()

    def replica_ids(self) -> frozenset[str]:
        """Ids of every replica instance currently tracked."""
        return frozenset(self._replicas)

    def registered_ids(self) -> frozenset[str]:
        return frozenset(r.replica_id for r in self._replicas.values() if r.registered)

    def get(self, replica_id: str) -> ReplicaHealth | None:
        health = self._replicas.get(replica_id)
        return replace(health) if health else None

    def add_replica(self, replica_id: str, address: str) -> ReplicaHealth:
        """Start tracking a replica that joined the service."""
        health = self._replicas.get(replica_id)
        if health is None:
            health = ReplicaHealth(replica_id=replica_id, address=address)
            self._replicas[replica_id] = health
            logger.info("Tracking replica %s at %s", replica_id, address)
        return replace(health)

    async def record_probe(self, replica_id: str, healthy: bool) -> ReplicaState | None:
        """Apply one probe result and return the replica's resulting state.

        Returns None if the replica stopped being tracked while it was probed.
        """
        async with self._lock:
            health = self._replicas.get(replica_id)
            if health is None:
                logger.debug("Dropped probe result for untracked replica %s", replica_id)
                return None
            return await self._apply_probe(health, healthy)

    async def _apply_probe(self, health: ReplicaHealth, healthy: bool) -> ReplicaState:
        replica_id = health.replica_id
        if health.state is ReplicaState.DEREGISTERED:
            if not healthy:
                return health.state
            # Same id probing healthy again: treat it as a fresh instance.
            logger.info("Replica %s recovered after deregistration, re-joining", replica_id)
            health = ReplicaHealth(replica_id=replica_id, address=health.address)
            self._replicas[replica_id] = health

        if healthy:
            health.consecutive_failures = 0
            if not health.registered:
                await self._register(health)
            elif health.state is ReplicaState.DEGRADED:
                health.state = ReplicaState.REGISTERED
                logger.info("Replica %s recovered", replica_id)
            return health.state

        if health.state is ReplicaState.UNREGISTERED:
            return health.state

        health.consecutive_failures += 1
        if health.consecutive_failures >= self.failure_threshold:
            await self._deregister(health)
        else:
            health.state = ReplicaState.DEGRADED
            logger.info(
                "Replica %s degraded (%d/%d failures)",
                replica_id, health.consecutive_failures, self.failure_threshold,
            )
        return health.state

    async def remove_replica(self, replica_id: str) -> None:
        """Forget a replica terminated by the orchestrator, removing its record."""
        async with self._lock:
            await self._remove_replica(replica_id)

    async def _remove_replica(self, replica_id: str) -> None:
        health = self._replicas.pop(replica_id, None)
        if health is None:
            return
        if health.registered:
            await self._deregister(health)
        logger.info("Replica %s terminated", replica_id)

    async def reconcile(self, live_replicas: Mapping[str, str]) -> None:
        """Match tracked replicas to the orchestrator's live set.

        Args:
            live_replicas: Mapping of live replica id to address
        """
        async with self._lock:
            for replica_id, address in live_replicas.items():
                if replica_id not in self._replicas:
                    self.add_replica(replica_id, address)

            for replica_id in self._stale_ids(live_replicas):
                await self._remove_replica(replica_id)

            for replica_id in sorted(self._pending_removals):
                await self._remove_record(replica_id)

    def _stale_ids(self, live_ids: Iterable[str]) -> list[str]:
        live = set(live_ids)
        return sorted(rid for rid in self._replicas if rid not in live)

    async def _register(self, health: ReplicaHealth) -> None:
        try:
            await call_with_retry(
                self._directory.register,
                self.service_name,
                health.replica_id,
                health.address,
                config=self._retry,
            )
        except MaxRetriesExceeded as exc:
            logger.error("Could not register %s: %s", health.replica_id, exc.last_exception)
            return
        self._pending_removals.discard(health.replica_id)
        health.registered = True
        health.state = ReplicaState.REGISTERED
        logger.info("Registered replica %s at %s", health.replica_id, health.address)

    async def _deregister(self, health: ReplicaHealth) -> None:
        await self._remove_record(health.replica_id)
        health.registered = False
        health.state = ReplicaState.DEREGISTERED
        logger.info(
            "Deregistered replica %s after %d failures",
            health.replica_id, health.consecutive_failures,
        )

    async def _remove_record(self, replica_id: str) -> bool:
        try:
            await call_with_retry(
                self._directory.deregister,
                self.service_name,
                replica_id,
                config=self._retry,
            )
        except MaxRetriesExceeded as exc:
            self._pending_removals.add(replica_id)
            logger.error("Could not deregister %s, will retry: %s", replica_id, exc.last_exception)
            return False
        self._pending_removals.discard(replica_id)
        return True

    def snapshot(self) -> list[dict]:
        return [h.to_dict() for h in sorted(self._replicas.values(), key=lambda h: h.replica_id)]
