"""Persistence of scaling activities.

Provides high-level operations for recording and querying the history of
capacity adjustments.
"""

import logging
from typing import Optional

from sqlalchemy import desc, func

from servicescaler.db.models import (
    DEFAULT_DB_URL,
    ScalingActivityRecord,
    create_db_engine,
    get_session,
)
from servicescaler.scaling.controller import ScalingActivity

logger = logging.getLogger(__name__)


class ActivityService:
    """Service for managing scaling activity history.

    Example:
        service = ActivityService("sqlite:///activity.db")
        controller.add_listener(service.record)  # runs in a worker thread
        service.list_activities("nginx", limit=20)
    """

    def __init__(self, db_url: str = DEFAULT_DB_URL):
        """Initialize service with database connection.

        Args:
            db_url: Database URL (defaults to SQLite in the working directory)
        """
        self.engine = create_db_engine(db_url)

    def record(self, activity: ScalingActivity) -> int:
        """Save one scaling activity.

        Args:
            activity: Activity produced by the capacity controller

        Returns:
            ID of saved record
        """
        session = get_session(self.engine)
        try:
            record = ScalingActivityRecord(
                service_id=activity.service_id,
                policy_id=activity.policy_id,
                previous_capacity=activity.previous,
                requested_capacity=activity.requested,
                desired_capacity=activity.desired,
                clamped=activity.clamped,
                occurred_at=activity.timestamp,
            )
            session.add(record)
            session.commit()
            logger.debug("Recorded scaling activity %d for %s", record.id, activity.service_id)
            return record.id
        finally:
            session.close()

    def list_activities(
        self,
        service_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        policy_id: Optional[str] = None,
        clamped_only: bool = False,
    ) -> list[dict]:
        """List activities, newest first, with optional filtering.

        Args:
            service_id: Filter by service
            limit: Maximum results to return
            offset: Offset for pagination
            policy_id: Filter by policy
            clamped_only: Only return adjustments absorbed by capacity bounds

        Returns:
            List of activity dictionaries
        """
        session = get_session(self.engine)
        try:
            query = session.query(ScalingActivityRecord)

            if service_id:
                query = query.filter_by(service_id=service_id)
            if policy_id:
                query = query.filter_by(policy_id=policy_id)
            if clamped_only:
                query = query.filter_by(clamped=True)

            records = (
                query
                .order_by(desc(ScalingActivityRecord.occurred_at), desc(ScalingActivityRecord.id))
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [r.to_dict() for r in records]
        finally:
            session.close()

    def get_statistics(self, service_id: Optional[str] = None) -> dict:
        """Get activity statistics.

        Returns:
            Dictionary with totals, clamped count and per-policy counts
        """
        session = get_session(self.engine)
        try:
            query = session.query(ScalingActivityRecord)
            if service_id:
                query = query.filter_by(service_id=service_id)

            total = query.count()
            clamped = query.filter(ScalingActivityRecord.clamped.is_(True)).count()

            by_policy_query = session.query(
                ScalingActivityRecord.policy_id,
                func.count(ScalingActivityRecord.id),
            )
            if service_id:
                by_policy_query = by_policy_query.filter_by(service_id=service_id)
            by_policy = dict(by_policy_query.group_by(ScalingActivityRecord.policy_id).all())

            return {
                "total_activities": total,
                "clamped_activities": clamped,
                "by_policy": by_policy,
            }
        finally:
            session.close()
