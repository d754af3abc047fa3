"""Tests for the in-memory external clients."""

import asyncio
from datetime import timedelta

import pytest

from servicescaler.clients import InMemoryDirectory, InMemoryOrchestrator, StaticHealthProbe
from servicescaler.errors import TransientIOError
from servicescaler.scaling.config import Aggregation


class TestInMemoryDirectory:
    """Tests for InMemoryDirectory."""

    def test_register_twice_same_as_once(self):
        """Registering twice leaves one record."""
        once, twice = InMemoryDirectory(), InMemoryDirectory()

        async def scenario():
            await once.register("svc", "r1", "10.0.0.1:80")
            await twice.register("svc", "r1", "10.0.0.1:80")
            await twice.register("svc", "r1", "10.0.0.1:80")

        asyncio.run(scenario())

        assert once.records("svc") == twice.records("svc")

    def test_deregister_twice_same_as_once(self):
        """Deregistering twice, or an absent record, succeeds."""
        directory = InMemoryDirectory()

        async def scenario():
            await directory.register("svc", "r1", "10.0.0.1:80")
            await directory.deregister("svc", "r1")
            await directory.deregister("svc", "r1")
            await directory.deregister("svc", "never-registered")

        asyncio.run(scenario())

        assert directory.records("svc") == []

    def test_injected_failure(self):
        """fail_next makes calls raise TransientIOError."""
        directory = InMemoryDirectory()
        directory.fail_next()

        with pytest.raises(TransientIOError, match="register failed"):
            asyncio.run(directory.register("svc", "r1", "10.0.0.1:80"))
        assert not directory.has_record("svc", "r1")


class TestInMemoryMetricSource:
    """Tests for InMemoryMetricSource."""

    def test_average_over_window(self, metric_source, clock):
        """Only datapoints inside (now - period, now] are aggregated."""
        metric_source.put("cpu", 10.0, timestamp=clock() - timedelta(seconds=90))
        metric_source.put("cpu", 60.0, timestamp=clock() - timedelta(seconds=30))
        metric_source.put("cpu", 80.0)

        sample = asyncio.run(metric_source.query("cpu", {}, timedelta(seconds=60), Aggregation.AVERAGE))

        assert sample.value == 70.0
        assert sample.timestamp == clock()
        assert sample.window == timedelta(seconds=60)

    def test_min_and_max(self, metric_source):
        """Min and Max aggregations pick the extremes."""
        for value in (30.0, 90.0, 50.0):
            metric_source.put("cpu", value)

        async def scenario():
            period = timedelta(seconds=60)
            low = await metric_source.query("cpu", {}, period, Aggregation.MIN)
            high = await metric_source.query("cpu", {}, period, Aggregation.MAX)
            return low.value, high.value

        assert asyncio.run(scenario()) == (30.0, 90.0)

    def test_dimensions_separate_streams(self, metric_source):
        """Datapoints with other dimensions are not mixed in."""
        metric_source.put("cpu", 90.0, dimensions={"service": "a"})
        metric_source.put("cpu", 10.0, dimensions={"service": "b"})

        sample = asyncio.run(
            metric_source.query("cpu", {"service": "a"}, timedelta(seconds=60), Aggregation.AVERAGE)
        )

        assert sample.value == 90.0

    def test_empty_window(self, metric_source):
        """No datapoints in the window yields None."""
        assert asyncio.run(
            metric_source.query("cpu", {}, timedelta(seconds=60), Aggregation.AVERAGE)
        ) is None


class TestInMemoryOrchestrator:
    """Tests for InMemoryOrchestrator."""

    def test_replicas(self):
        """Replicas are listed sorted and resolved to addresses."""
        orchestrator = InMemoryOrchestrator()
        orchestrator.add_replica("svc", "r2", "10.0.0.2:80")
        orchestrator.add_replica("svc", "r1", "10.0.0.1:80")

        async def scenario():
            return (
                await orchestrator.list_replicas("svc"),
                await orchestrator.replica_address("svc", "r2"),
            )

        assert asyncio.run(scenario()) == (["r1", "r2"], "10.0.0.2:80")

    def test_unknown_replica_address(self):
        """Resolving a terminated replica raises TransientIOError."""
        orchestrator = InMemoryOrchestrator()

        with pytest.raises(TransientIOError):
            asyncio.run(orchestrator.replica_address("svc", "gone"))

    def test_set_desired_count(self):
        """Updates are recorded in order."""
        orchestrator = InMemoryOrchestrator()

        async def scenario():
            await orchestrator.set_desired_count("svc", 3)
            await orchestrator.set_desired_count("svc", 5)

        asyncio.run(scenario())

        assert orchestrator.desired == {"svc": 5}
        assert orchestrator.updates == [("svc", 3), ("svc", 5)]


class TestStaticHealthProbe:
    """Tests for StaticHealthProbe."""

    def test_results(self):
        """Configured replicas report their result; others are healthy."""
        probe = StaticHealthProbe({"r1": False})

        async def scenario():
            return await probe.check("r1", "a"), await probe.check("r2", "b")

        assert asyncio.run(scenario()) == (False, True)
        assert probe.checked == ["r1", "r2"]
