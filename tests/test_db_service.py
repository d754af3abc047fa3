"""Tests for scaling activity persistence."""

from datetime import datetime, timedelta, timezone

import pytest

from servicescaler.db import ActivityService
from servicescaler.scaling.controller import ScalingActivity

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_service(tmp_path):
    """Create test database service."""
    db_url = f"sqlite:///{tmp_path}/test.db"
    return ActivityService(db_url)


def make_activity(
    previous: int,
    requested: int,
    desired: int,
    policy_id: str = "scale-up",
    service_id: str = "svc",
    minutes: int = 0,
) -> ScalingActivity:
    return ScalingActivity(
        service_id=service_id,
        policy_id=policy_id,
        previous=previous,
        requested=requested,
        desired=desired,
        timestamp=T0 + timedelta(minutes=minutes),
    )


class TestActivityService:
    """Tests for ActivityService."""

    def test_record_and_list(self, db_service):
        """Should save and list an activity."""
        record_id = db_service.record(make_activity(2, 5, 5))

        assert record_id is not None
        assert record_id > 0

        activities = db_service.list_activities()

        assert len(activities) == 1
        assert activities[0]["service_id"] == "svc"
        assert activities[0]["previous_capacity"] == 2
        assert activities[0]["desired_capacity"] == 5
        assert activities[0]["clamped"] is False

    def test_clamped_activity(self, db_service):
        """Clamped adjustments are stored with their requested count."""
        db_service.record(make_activity(9, 12, 10))

        activity = db_service.list_activities()[0]

        assert activity["requested_capacity"] == 12
        assert activity["desired_capacity"] == 10
        assert activity["clamped"] is True

    def test_newest_first(self, db_service):
        """Should list activities newest first."""
        for minute in range(3):
            db_service.record(make_activity(2 + minute, 3 + minute, 3 + minute, minutes=minute))

        activities = db_service.list_activities()

        assert [a["previous_capacity"] for a in activities] == [4, 3, 2]

    def test_pagination(self, db_service):
        """Should support limit and offset."""
        for minute in range(5):
            db_service.record(make_activity(2, 3, 3, minutes=minute))

        page1 = db_service.list_activities(limit=2, offset=0)
        page2 = db_service.list_activities(limit=2, offset=2)

        assert len(page1) == 2
        assert len(page2) == 2
        assert {a["id"] for a in page1}.isdisjoint({a["id"] for a in page2})

    def test_filters(self, db_service):
        """Should filter by service, policy and clamping."""
        db_service.record(make_activity(2, 3, 3, policy_id="scale-up"))
        db_service.record(make_activity(3, 2, 2, policy_id="scale-down", minutes=1))
        db_service.record(make_activity(2, 1, 2, policy_id="scale-down", minutes=2))
        db_service.record(make_activity(2, 3, 3, service_id="other", minutes=3))

        assert len(db_service.list_activities(service_id="svc")) == 3
        assert len(db_service.list_activities(policy_id="scale-down")) == 2
        clamped = db_service.list_activities(clamped_only=True)
        assert len(clamped) == 1
        assert clamped[0]["requested_capacity"] == 1

    def test_get_statistics(self, db_service):
        """Should summarise activity counts."""
        db_service.record(make_activity(2, 3, 3, policy_id="scale-up"))
        db_service.record(make_activity(9, 12, 10, policy_id="scale-up", minutes=1))
        db_service.record(make_activity(10, 9, 9, policy_id="scale-down", minutes=2))
        db_service.record(make_activity(2, 3, 3, service_id="other", minutes=3))

        stats = db_service.get_statistics("svc")

        assert stats["total_activities"] == 3
        assert stats["clamped_activities"] == 1
        assert stats["by_policy"] == {"scale-up": 2, "scale-down": 1}

    def test_empty_statistics(self, db_service):
        """Statistics on an empty database are zero."""
        stats = db_service.get_statistics()

        assert stats == {"total_activities": 0, "clamped_activities": 0, "by_policy": {}}
