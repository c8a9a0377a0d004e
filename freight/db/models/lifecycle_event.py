"""
Lifecycle Event Model - transactional outbox for domain events
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, JSON, Enum as SQLEnum, Index

from freight.core.clock import utcnow
from freight.db.database import Base


class EventStatus(str, enum.Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    FAILED = "failed"


class LifecycleEvent(Base):
    """Written in the same transaction as the state change it describes"""

    __tablename__ = "lifecycle_events"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, index=True)   # e.g. "trip.completed"
    aggregate_type = Column(String(50), nullable=False)
    aggregate_id = Column(Integer, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    correlation_id = Column(String(64), nullable=True)

    status = Column(SQLEnum(EventStatus), nullable=False, default=EventStatus.PENDING)
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime, nullable=True)
    last_error = Column(String(1000), nullable=True)

    occurred_at = Column(DateTime, default=utcnow, nullable=False)
    dispatched_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_lifecycle_events_status_occurred", "status", "occurred_at"),
        Index("ix_lifecycle_events_aggregate", "aggregate_type", "aggregate_id"),
    )
