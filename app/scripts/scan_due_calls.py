"""Periodic scanner that fires overdue scheduled calls.

For platforms that run cron jobs instead of Celery beat. Run every minute:
    python -m app.scripts.scan_due_calls
"""

from __future__ import annotations

import asyncio

from app.services.call_scheduler import get_call_scheduler
from app.services.schedule_store import now_ms
from app.types.scheduling import WakeOutcome
from app.utils.log import configure_logging, get_logger
from config import settings
import db

logger = get_logger(__name__)


async def main() -> dict[str, WakeOutcome]:
    outcomes: dict[str, WakeOutcome] = {}
    try:
        due = await db.fetch_due_calls(now_ms(), limit=settings.DISPATCH_DUE_LIMIT)
        for row in due:
            scheduler = get_call_scheduler(row["entity_id"])
            try:
                outcomes[row["entity_id"]] = await scheduler.on_wake(row["scheduled_at_ms"])
            except Exception:  # noqa: BLE001
                # Row stays PENDING; the next run picks it up again.
                logger.exception("scan_wake_failed", entity_id=row["entity_id"])
    finally:
        await db.dispose_engine()
    return outcomes


if __name__ == "__main__":  # pragma: no cover
    configure_logging()
    logger.info("scan_due_calls_started")
    try:
        results = asyncio.run(main())
        logger.info(
            "scan_due_calls_completed",
            outcomes={k: v.value for k, v in results.items()},
        )
    except Exception:
        logger.exception("scan_due_calls_failed")
        raise SystemExit(1)
