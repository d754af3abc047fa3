"""Database models for scaling activity history.

Supports SQLite (default) and PostgreSQL (production).
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    create_engine,
)
from sqlalchemy.orm import DeclarativeBase, sessionmaker

DEFAULT_DB_URL = "sqlite:///scaling_activity.db"


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class ScalingActivityRecord(Base):
    """One applied capacity delta.

    Clamped adjustments are stored too; they are normal operation and the
    history is where they become visible.
    """

    __tablename__ = "scaling_activities"

    id = Column(Integer, primary_key=True, autoincrement=True)

    service_id = Column(String(255), nullable=False, index=True)
    policy_id = Column(String(255), nullable=False, index=True)

    previous_capacity = Column(Integer, nullable=False)
    requested_capacity = Column(Integer, nullable=False)
    desired_capacity = Column(Integer, nullable=False)
    clamped = Column(Boolean, nullable=False, default=False, index=True)

    occurred_at = Column(DateTime(timezone=True), nullable=False, index=True)
    recorded_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def to_dict(self) -> dict:
        """Convert to dictionary for API/display.

        Returns:
            Dictionary representation of the activity
        """
        return {
            "id": self.id,
            "service_id": self.service_id,
            "policy_id": self.policy_id,
            "previous_capacity": self.previous_capacity,
            "requested_capacity": self.requested_capacity,
            "desired_capacity": self.desired_capacity,
            "clamped": self.clamped,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
        }


def create_db_engine(db_url: str = DEFAULT_DB_URL):
    """Create database engine and tables.

    Args:
        db_url: Database connection URL (SQLite or PostgreSQL)

    Returns:
        SQLAlchemy engine
    """
    # Use check_same_thread=False for SQLite to allow multi-threading
    connect_args = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    engine = create_engine(db_url, echo=False, connect_args=connect_args)
    Base.metadata.create_all(engine)
    return engine


def get_session(engine):
    """Get database session.

    Args:
        engine: SQLAlchemy engine

    Returns:
        New session instance
    """
    Session = sessionmaker(bind=engine)
    return Session()
