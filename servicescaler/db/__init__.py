"""Database package for scaling activity persistence."""

from servicescaler.db.models import ScalingActivityRecord, create_db_engine, get_session
from servicescaler.db.service import ActivityService

__all__ = ["ScalingActivityRecord", "create_db_engine", "get_session", "ActivityService"]
