"""Storage slot + wake trigger used by the call scheduler.

A *slot* is the exclusive, serialized view of one scheduler entity's record:
everything done between entering and leaving ``store.slot(entity_id)``
happens under that entity's lock and becomes visible atomically on exit.

Two backends exist:

• Postgres + Celery (``db.SqlScheduleStore`` / :class:`CeleryWakeTrigger`)
  for production, where the API process and the worker that wakes up later
  are different processes.
• In-process (:class:`MemoryScheduleStore` / :class:`AsyncioWakeTrigger`)
  for local development and tests. State lives only as long as the process.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import (
    AsyncContextManager,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Optional,
    Protocol,
    Set,
)

from app.types.scheduling import ScheduledCall
from app.utils.log import get_logger

logger = get_logger(__name__)

ON_WAKE_TASK = "app.workers.scheduler.on_wake"


class ScheduleSlot(Protocol):
    async def get(self) -> Optional[ScheduledCall]: ...

    async def put(self, call: ScheduledCall) -> None: ...


class ScheduleStore(Protocol):
    def slot(self, entity_id: str) -> AsyncContextManager[ScheduleSlot]: ...


class WakeTrigger(Protocol):
    async def arm(self, entity_id: str, at_ms: int) -> None: ...


# ──────────────────────────────────────────────────────────────────────
# In-process backend
# ──────────────────────────────────────────────────────────────────────


class _MemorySlot:
    def __init__(self, records: Dict[str, ScheduledCall], entity_id: str) -> None:
        self._records = records
        self._entity_id = entity_id
        self._pending: Optional[ScheduledCall] = None

    async def get(self) -> Optional[ScheduledCall]:
        if self._pending is not None:
            return self._pending
        return self._records.get(self._entity_id)

    async def put(self, call: ScheduledCall) -> None:
        if call.entity_id != self._entity_id:
            raise ValueError(f"slot {self._entity_id} cannot hold {call.entity_id}")
        self._pending = call

    def commit(self) -> None:
        if self._pending is not None:
            self._records[self._entity_id] = self._pending


class MemoryScheduleStore:
    """Dict-backed store with one ``asyncio.Lock`` per entity."""

    def __init__(self) -> None:
        self._records: Dict[str, ScheduledCall] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def slot(self, entity_id: str) -> AsyncIterator[_MemorySlot]:
        lock = self._locks.setdefault(entity_id, asyncio.Lock())
        async with lock:
            slot = _MemorySlot(self._records, entity_id)
            yield slot
            # Only reached when the block finished without raising.
            slot.commit()

    def peek(self, entity_id: str) -> Optional[ScheduledCall]:
        """Unlocked read for diagnostics and tests."""
        return self._records.get(entity_id)


WakeCallback = Callable[[str, int], Awaitable[object]]


class AsyncioWakeTrigger:
    """Fires ``callback(entity_id, at_ms)`` from the running event loop.

    Re-arming does not cancel earlier timers: like any at-least-once trigger
    the callback has to cope with stale deliveries itself.
    """

    def __init__(self, callback: WakeCallback) -> None:
        self._callback = callback
        self._tasks: Set[asyncio.Task] = set()

    async def arm(self, entity_id: str, at_ms: int) -> None:
        task = asyncio.create_task(self._fire_at(entity_id, at_ms))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _fire_at(self, entity_id: str, at_ms: int) -> None:
        # Sleep in a loop so the callback never runs before at_ms even if
        # the loop's monotonic clock and the wall clock drift apart.
        while True:
            delay = (at_ms - now_ms()) / 1000
            if delay <= 0:
                break
            await asyncio.sleep(delay)
        try:
            await self._callback(entity_id, at_ms)
        except Exception:  # noqa: BLE001
            logger.exception("wake_callback_failed", entity_id=entity_id, due_at_ms=at_ms)

    async def drain(self) -> None:
        """Wait for every armed timer (tests / graceful shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()


# ──────────────────────────────────────────────────────────────────────
# Celery backend (trigger half; the store half lives in db/)
# ──────────────────────────────────────────────────────────────────────


class CeleryWakeTrigger:
    """Queues the ``on_wake`` task with an ``eta`` at the due time.

    The broker keeps the message across worker restarts and ``acks_late``
    redelivers it if a worker dies mid-task, so delivery is at-least-once.
    """

    def __init__(self, celery_app=None) -> None:
        self._celery_app = celery_app

    def _app(self):
        if self._celery_app is None:
            from app.celery_app import celery_app

            self._celery_app = celery_app
        return self._celery_app

    async def arm(self, entity_id: str, at_ms: int) -> None:
        eta = datetime.fromtimestamp(at_ms / 1000, tz=timezone.utc)
        # send_task blocks on the broker publish; keep it off the event loop.
        result = await asyncio.to_thread(
            self._app().send_task,
            ON_WAKE_TASK,
            args=[entity_id, at_ms],
            eta=eta,
            queue="scheduler",
        )
        logger.info(
            "wake_armed",
            entity_id=entity_id,
            due_at_ms=at_ms,
            eta=eta.isoformat(),
            task_id=getattr(result, "id", None),
        )


def now_ms() -> int:
    return int(datetime.now(tz=timezone.utc).timestamp() * 1000)
