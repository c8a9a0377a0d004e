"""
Event Sink - Transactional Outbox for lifecycle events

Services call ``emit`` inside their own transaction; nothing is published
until that transaction commits. The Celery task ``dispatch_lifecycle_events``
drains the table to Redis.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import select, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from freight.core.clock import utcnow
from freight.core.config import settings
from freight.core.logging import correlation_id_var
from freight.db.models.lifecycle_event import LifecycleEvent, EventStatus


def _calculate_backoff_seconds(retry_count: int, *, base_seconds: int, max_backoff_seconds: int) -> int:
    """base * 2**retry_count, capped; never computes a huge power"""
    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0
    retry_count = max(retry_count, 0)
    # 2**63 כבר חורג מכל תקרה סבירה
    if retry_count >= 63 or base_seconds << retry_count >= max_backoff_seconds:
        return max_backoff_seconds
    return base_seconds << retry_count


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class EventSink:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def emit(
        self,
        name: str,
        aggregate_type: str,
        aggregate_id: int,
        payload: dict[str, Any] | None = None,
    ) -> LifecycleEvent:
        """Queue an event in the caller's transaction (no commit)"""
        event = LifecycleEvent(
            name=name,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            payload=_jsonable(payload or {}),
            correlation_id=correlation_id_var.get() or None,
            status=EventStatus.PENDING,
            occurred_at=utcnow(),
        )
        self.db.add(event)
        return event

    async def get_pending_events(self, limit: int = 100, now: datetime | None = None) -> list[LifecycleEvent]:
        now = now or utcnow()
        result = await self.db.execute(
            select(LifecycleEvent)
            .where(
                LifecycleEvent.status == EventStatus.PENDING,
                or_(LifecycleEvent.next_retry_at.is_(None), LifecycleEvent.next_retry_at <= now),
            )
            .order_by(LifecycleEvent.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_events_for(self, aggregate_type: str, aggregate_id: int) -> list[LifecycleEvent]:
        result = await self.db.execute(
            select(LifecycleEvent)
            .where(
                LifecycleEvent.aggregate_type == aggregate_type,
                LifecycleEvent.aggregate_id == aggregate_id,
            )
            .order_by(LifecycleEvent.id)
        )
        return list(result.scalars().all())

    async def mark_dispatched(self, event: LifecycleEvent) -> None:
        event.status = EventStatus.DISPATCHED
        event.dispatched_at = utcnow()
        event.last_error = None
        await self.db.commit()

    async def mark_failed(self, event: LifecycleEvent, error: str) -> None:
        """Schedule a retry with exponential backoff, or give up after EVENT_MAX_RETRIES"""
        event.retry_count = (event.retry_count or 0) + 1
        event.last_error = error[:1000]
        if event.retry_count >= settings.EVENT_MAX_RETRIES:
            event.status = EventStatus.FAILED
            event.next_retry_at = None
        else:
            event.status = EventStatus.PENDING
            event.next_retry_at = utcnow() + timedelta(seconds=_calculate_backoff_seconds(
                event.retry_count,
                base_seconds=settings.EVENT_RETRY_BASE_SECONDS,
                max_backoff_seconds=settings.EVENT_MAX_BACKOFF_SECONDS,
            ))
        await self.db.commit()

    async def purge_dispatched(self, older_than_days: int) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        result = await self.db.execute(
            delete(LifecycleEvent).where(
                LifecycleEvent.status == EventStatus.DISPATCHED,
                LifecycleEvent.dispatched_at < cutoff,
            )
        )
        await self.db.commit()
        return result.rowcount or 0
