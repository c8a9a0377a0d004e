"""
Celery Tasks

Worker side of the lifecycle event outbox plus payment reconciliation.
Each task runs its coroutine in a fresh event loop with its own DB engine
(see ``get_task_session``).
"""
from __future__ import annotations

import asyncio
import json
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Protocol

from redis.exceptions import RedisError

from freight.core.config import settings
from freight.core.logging import get_logger, set_correlation_id
from freight.db.database import get_task_session
from freight.db.models.lifecycle_event import LifecycleEvent
from freight.domain.services.event_sink import EventSink
from freight.domain.services.payment_orchestrator import PaymentOrchestrator
from freight.workers.celery_app import celery_app

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


class Publisher(Protocol):
    async def publish(self, channel: str, message: str) -> Any: ...


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop, אחרת הריצה הבאה
            # תקבל client שמחובר ל-loop סגור
            from freight.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning("Failed to close Redis at task end", extra_data={"error": str(e)})
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


def event_envelope(event: LifecycleEvent) -> str:
    """JSON body published for one lifecycle event"""
    return json.dumps({
        "id": event.id,
        "name": event.name,
        "aggregate_type": event.aggregate_type,
        "aggregate_id": event.aggregate_id,
        "payload": event.payload or {},
        "correlation_id": event.correlation_id,
        "occurred_at": event.occurred_at.isoformat() if event.occurred_at else None,
    }, ensure_ascii=False)


async def dispatch_pending_events(db: AsyncSession, publisher: Publisher, limit: int = 100) -> dict[str, int]:
    """Publish due events in id order; a failed publish is rescheduled with backoff"""
    sink = EventSink(db)
    events = await sink.get_pending_events(limit=limit)

    dispatched = failed = 0
    for event in events:
        try:
            await publisher.publish(settings.EVENTS_CHANNEL, event_envelope(event))
        except (RedisError, OSError) as e:
            failed += 1
            logger.warning(
                "Lifecycle event publish failed",
                extra_data={"event_id": event.id, "event_name": event.name, "retry_count": event.retry_count,
                            "error": str(e)}
            )
            await sink.mark_failed(event, str(e))
            continue
        await sink.mark_dispatched(event)
        dispatched += 1

    if events:
        logger.info(
            "Lifecycle events dispatched",
            extra_data={"dispatched": dispatched, "failed": failed, "batch": len(events)}
        )
    return {"dispatched": dispatched, "failed": failed}


@celery_app.task(name="freight.workers.tasks.dispatch_lifecycle_events")
def dispatch_lifecycle_events(limit: int = 100):
    """Drain the lifecycle event outbox to the Redis channel"""

    async def _dispatch():
        from freight.core.redis_client import get_redis

        redis = await get_redis()
        async with get_task_session() as db:
            return await dispatch_pending_events(db, redis, limit=limit)

    return run_async(_dispatch())


@celery_app.task(name="freight.workers.tasks.reconcile_processing_payments")
def reconcile_processing_payments(older_than_minutes: int | None = None, limit: int = 50):
    """Ask the gateways about payments stuck in Processing"""

    async def _reconcile():
        async with get_task_session() as db:
            summary = await PaymentOrchestrator(db).reconcile_processing(
                older_than_minutes=older_than_minutes, limit=limit
            )
            return summary.__dict__

    return run_async(_reconcile())


@celery_app.task(name="freight.workers.tasks.cleanup_dispatched_events")
def cleanup_dispatched_events(days: int | None = None):
    """Delete dispatched events older than EVENT_RETENTION_DAYS"""

    async def _cleanup():
        retention = days if days is not None else settings.EVENT_RETENTION_DAYS
        async with get_task_session() as db:
            deleted = await EventSink(db).purge_dispatched(retention)
            logger.info(
                "Cleaned up dispatched lifecycle events",
                extra_data={"deleted": deleted, "cutoff_days": retention},
            )
            return {"deleted": deleted}

    return run_async(_cleanup())
