"""Celery tasks that drive the call scheduler's wake side.

Flow:
1. ``CallScheduler.schedule`` queues ``on_wake(entity_id, due_at_ms)`` with
   an ``eta`` at the due time.
2. ``on_wake`` re-reads the record and places the call if it is still the
   PENDING schedule it was armed for.
3. ``dispatch_due`` (beat, every minute) re-queues ``on_wake`` for PENDING
   calls that are overdue, in case the original message was lost.

Duplicates from either path are absorbed by the guards in ``on_wake``.
Retries: only infrastructure errors (DB down, broker hiccup) are retried;
provider failures are already recorded as FAILED by the scheduler.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from app.celery_app import celery_app
from app.services.call_scheduler import get_call_scheduler
from app.services.schedule_store import ON_WAKE_TASK, now_ms
from app.utils.log import get_logger
from config import settings
import db

logger = get_logger(__name__)

_T = TypeVar("_T")


def _run(coro: Awaitable[_T]) -> _T:
    """Run ``coro`` on a fresh loop and drop the engine pool bound to it."""

    async def _scoped() -> _T:
        try:
            return await coro
        finally:
            if settings.SCHEDULE_BACKEND == "postgres":
                await db.dispose_engine()

    return asyncio.run(_scoped())


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

@celery_app.task(name=ON_WAKE_TASK, bind=True, max_retries=5)
def on_wake(self, entity_id: str, due_at_ms: int | None = None):  # noqa: D401
    """Deliver one wake to the scheduler entity; returns the outcome value."""
    try:
        outcome = _run(get_call_scheduler(entity_id).on_wake(due_at_ms))
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "wake_delivery_failed",
            entity_id=entity_id,
            due_at_ms=due_at_ms,
            error=str(exc),
        )
        raise self.retry(exc=exc, countdown=30)
    return outcome.value


@celery_app.task(name="app.workers.scheduler.dispatch_due", bind=True)
def dispatch_due(self):  # noqa: D401
    """Fetch overdue PENDING calls and enqueue a wake for each."""
    try:
        due: list[dict] = _run(
            db.fetch_due_calls(now_ms(), limit=settings.DISPATCH_DUE_LIMIT)
        )
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=30)

    for row in due:
        celery_app.send_task(
            ON_WAKE_TASK,
            args=[row["entity_id"], row["scheduled_at_ms"]],
            queue="scheduler",
        )
    if due:
        logger.info("due_calls_dispatched", count=len(due))
    return len(due)
