"""Unit tests for the health-driven discovery registry."""

import asyncio

import pytest

from servicescaler.clients import InMemoryDirectory
from servicescaler.discovery import HealthRegistry, ReplicaState
from servicescaler.errors import ConfigurationError


def run(coro):
    return asyncio.run(coro)


class SlowDirectory(InMemoryDirectory):
    """Directory whose registrations take a while to land."""

    async def register(self, service_name, replica_id, address):
        await asyncio.sleep(0.05)
        await super().register(service_name, replica_id, address)


@pytest.fixture
def registry(directory, fast_retry):
    registry = HealthRegistry("svc.local", directory, failure_threshold=1, retry_config=fast_retry)
    registry.add_replica("r1", "10.0.0.1:80")
    return registry


class TestHealthRegistry:
    """Tests for probe-driven registration."""

    def test_invalid_threshold(self, directory):
        """failure_threshold must be at least 1."""
        with pytest.raises(ConfigurationError):
            HealthRegistry("svc.local", directory, failure_threshold=0)

    def test_starts_unregistered(self, registry, directory):
        """A new replica has no record until it probes healthy."""
        assert registry.get("r1").state is ReplicaState.UNREGISTERED
        assert not directory.has_record("svc.local", "r1")

    def test_first_healthy_probe_registers(self, registry, directory):
        """The first healthy probe publishes a record."""
        state = run(registry.record_probe("r1", True))

        assert state is ReplicaState.REGISTERED
        assert directory.has_record("svc.local", "r1")
        assert directory.records("svc.local")[0].address == "10.0.0.1:80"
        assert registry.registered_ids() == frozenset({"r1"})

    def test_failed_probe_before_registration_ignored(self, registry, directory):
        """Failures while unregistered leave the replica unregistered."""
        state = run(registry.record_probe("r1", False))

        assert state is ReplicaState.UNREGISTERED
        assert registry.get("r1").consecutive_failures == 0
        assert directory.calls == []

    def test_threshold_one_deregisters_immediately(self, registry, directory):
        """With failure_threshold=1 one failed probe removes the record."""

        async def scenario():
            await registry.record_probe("r1", True)
            return await registry.record_probe("r1", False)

        assert run(scenario()) is ReplicaState.DEREGISTERED
        assert not directory.has_record("svc.local", "r1")
        assert registry.registered_ids() == frozenset()

    def test_degraded_below_threshold(self, directory, fast_retry):
        """Failures below the threshold degrade without deregistering."""
        registry = HealthRegistry("svc.local", directory, failure_threshold=3, retry_config=fast_retry)
        registry.add_replica("r1", "10.0.0.1:80")

        async def scenario():
            await registry.record_probe("r1", True)
            return [await registry.record_probe("r1", False) for _ in range(3)]

        states = run(scenario())

        assert states == [ReplicaState.DEGRADED, ReplicaState.DEGRADED, ReplicaState.DEREGISTERED]
        assert not directory.has_record("svc.local", "r1")

    def test_success_resets_failures(self, directory, fast_retry):
        """A healthy probe resets the failure count and restores registration."""
        registry = HealthRegistry("svc.local", directory, failure_threshold=3, retry_config=fast_retry)
        registry.add_replica("r1", "10.0.0.1:80")

        async def scenario():
            await registry.record_probe("r1", True)
            await registry.record_probe("r1", False)
            await registry.record_probe("r1", False)
            recovered = await registry.record_probe("r1", True)
            after = [await registry.record_probe("r1", False) for _ in range(2)]
            return recovered, after

        recovered, after = run(scenario())

        assert recovered is ReplicaState.REGISTERED
        assert after == [ReplicaState.DEGRADED, ReplicaState.DEGRADED]
        assert registry.get("r1").consecutive_failures == 2
        assert directory.has_record("svc.local", "r1")

    def test_repeated_healthy_probes_are_idempotent(self, registry, directory):
        """Only the first healthy probe calls the directory."""

        async def scenario():
            for _ in range(4):
                await registry.record_probe("r1", True)

        run(scenario())

        assert directory.calls == [("register", "svc.local", "r1")]

    def test_deregistered_replica_stays_down_on_failure(self, registry, directory):
        """Further failures after deregistration make no directory calls."""

        async def scenario():
            await registry.record_probe("r1", True)
            await registry.record_probe("r1", False)
            return await registry.record_probe("r1", False)

        assert run(scenario()) is ReplicaState.DEREGISTERED
        assert directory.calls == [
            ("register", "svc.local", "r1"),
            ("deregister", "svc.local", "r1"),
        ]

    def test_recovery_after_deregistration_rejoins(self, registry, directory):
        """A healthy probe after deregistration registers a fresh instance."""

        async def scenario():
            await registry.record_probe("r1", True)
            await registry.record_probe("r1", False)
            return await registry.record_probe("r1", True)

        assert run(scenario()) is ReplicaState.REGISTERED
        assert directory.has_record("svc.local", "r1")
        assert registry.get("r1").consecutive_failures == 0

    def test_register_failure_retried_on_next_probe(self, registry, directory, fast_retry):
        """An exhausted register leaves the replica unregistered for the next probe."""
        directory.fail_next(fast_retry.max_retries + 1)

        async def scenario():
            first = await registry.record_probe("r1", True)
            second = await registry.record_probe("r1", True)
            return first, second

        first, second = run(scenario())

        assert first is ReplicaState.UNREGISTERED
        assert second is ReplicaState.REGISTERED
        assert directory.has_record("svc.local", "r1")

    def test_get_returns_copy(self, registry):
        """Mutating a returned ReplicaHealth does not affect the registry."""
        health = registry.get("r1")
        health.consecutive_failures = 42
        assert registry.get("r1").consecutive_failures == 0

    def test_unknown_replica(self, registry, directory):
        """A result for an untracked replica is dropped."""
        assert run(registry.record_probe("ghost", True)) is None
        assert registry.replica_ids() == frozenset({"r1"})
        assert not directory.has_record("svc.local", "ghost")


class TestReconcile:
    """Tests for reconciling against the orchestrator's replica list."""

    def test_adds_new_replicas(self, registry):
        """Unknown live replicas start being tracked."""
        run(registry.reconcile({"r1": "10.0.0.1:80", "r2": "10.0.0.2:80"}))

        assert registry.replica_ids() == frozenset({"r1", "r2"})
        assert registry.get("r2").state is ReplicaState.UNREGISTERED

    def test_removes_terminated_replicas(self, registry, directory):
        """Replicas missing from the live set are forgotten and their records removed."""

        async def scenario():
            await registry.record_probe("r1", True)
            await registry.reconcile({})

        run(scenario())

        assert registry.replica_ids() == frozenset()
        assert not directory.has_record("svc.local", "r1")

    def test_termination_waits_for_registration(self, fast_retry):
        """Removal that races an in-flight registration leaves no record behind."""
        directory = SlowDirectory()
        registry = HealthRegistry("svc.local", directory, retry_config=fast_retry)
        registry.add_replica("r1", "10.0.0.1:80")

        async def scenario():
            await asyncio.gather(registry.record_probe("r1", True), registry.reconcile({}))

        run(scenario())

        assert registry.replica_ids() == frozenset()
        assert not directory.has_record("svc.local", "r1")

    def test_pending_removal_retried(self, registry, directory, fast_retry):
        """A failed record removal is retried on the next reconcile."""

        async def scenario():
            await registry.record_probe("r1", True)
            directory.fail_next(fast_retry.max_retries + 1)
            state = await registry.record_probe("r1", False)
            still_listed = directory.has_record("svc.local", "r1")
            await registry.reconcile({"r1": "10.0.0.1:80"})
            return state, still_listed

        state, still_listed = run(scenario())

        assert state is ReplicaState.DEREGISTERED
        assert still_listed
        assert not directory.has_record("svc.local", "r1")

    def test_snapshot(self, registry):
        """Snapshot is sorted by replica id."""
        registry.add_replica("r0", "10.0.0.9:80")
        assert [r["replica_id"] for r in registry.snapshot()] == ["r0", "r1"]
        assert registry.snapshot()[1]["state"] == "unregistered"
