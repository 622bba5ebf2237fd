"""
Delayed outbound-call scheduler.

One scheduler *entity* (``SCHEDULER_ENTITY_ID``, "global-scheduler" by
default) owns exactly one ``ScheduledCall`` and one wake trigger. Every
operation runs inside the entity's store slot, so schedule / status / wake
never interleave their read-modify-write.

Flow:
1. ``schedule(delay)`` validates the delay, overwrites the record with a
   fresh PENDING call and arms the wake trigger for its due time.
2. The trigger delivers ``on_wake(due_at_ms)`` at or after that time, at
   least once. Each delivery re-reads the record and only places the call
   if it is still the same PENDING schedule and actually due.
3. ``get_status()`` is a read-only projection of the current record.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from functools import lru_cache
from typing import Callable, Optional, Union
from zoneinfo import ZoneInfo

from app.services.schedule_store import (
    AsyncioWakeTrigger,
    CeleryWakeTrigger,
    MemoryScheduleStore,
    ScheduleStore,
    WakeTrigger,
    now_ms,
)
from app.types.scheduling import (
    CallResult,
    CallStatus,
    CallTarget,
    ScheduleAccepted,
    ScheduledCall,
    StatusReport,
    WakeOutcome,
    parse_delay,
)
from app.utils import calls
from app.utils.log import get_logger
from config import settings

logger = get_logger(__name__)

MS_PER_MINUTE = 60_000

# Provider calls run here rather than on the loop default executor, which
# asyncio.run() joins on exit. A call abandoned by the timeout keeps its
# thread but no longer holds up the caller.
_PROVIDER_POOL = ThreadPoolExecutor(max_workers=4, thread_name_prefix="call-provider")

CallPlacer = Callable[[CallTarget], CallResult]


def format_local_time(epoch_ms: int, tz_name: str) -> str:
    """Render an epoch-ms instant as a wall-clock time, e.g. ``03:07:12 PM``."""
    try:
        tz = ZoneInfo(tz_name)
    except Exception:  # noqa: BLE001
        logger.warning("invalid_timezone", timezone=tz_name)
        tz = timezone.utc
    return datetime.fromtimestamp(epoch_ms / 1000, tz=tz).strftime("%I:%M:%S %p")


class CallScheduler:
    def __init__(
        self,
        entity_id: str,
        store: ScheduleStore,
        trigger: WakeTrigger,
        place_call: CallPlacer,
        target: CallTarget,
        *,
        clock: Callable[[], int] = now_ms,
        tz_name: str = "UTC",
        call_timeout: float = 15.0,
        min_delay: int = 1,
        max_delay: int = 60,
    ) -> None:
        self.entity_id = entity_id
        self._store = store
        self._trigger = trigger
        self._place_call = place_call
        self._target = target
        self._clock = clock
        self._tz_name = tz_name
        self._call_timeout = call_timeout
        self._min_delay = min_delay
        self._max_delay = max_delay

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------

    async def schedule(self, delay: Union[int, str, None]) -> ScheduleAccepted:
        """Replace whatever is scheduled with a call ``delay`` minutes from now.

        Raises:
            InvalidDelayError: before anything is written or armed.
        """
        delay_minutes = parse_delay(delay, self._min_delay, self._max_delay)

        async with self._store.slot(self.entity_id) as slot:
            scheduled_at_ms = self._clock() + delay_minutes * MS_PER_MINUTE
            previous = await slot.get()
            await slot.put(
                ScheduledCall(
                    entity_id=self.entity_id,
                    scheduled_at_ms=scheduled_at_ms,
                    target=self._target,
                )
            )
            await self._trigger.arm(self.entity_id, scheduled_at_ms)

        if previous is not None and previous.status is CallStatus.PENDING:
            logger.info(
                "pending_call_superseded",
                entity_id=self.entity_id,
                previous_due_at_ms=previous.scheduled_at_ms,
                due_at_ms=scheduled_at_ms,
            )
        logger.info(
            "call_scheduled",
            entity_id=self.entity_id,
            delay_minutes=delay_minutes,
            due_at_ms=scheduled_at_ms,
        )

        formatted = format_local_time(scheduled_at_ms, self._tz_name)
        return ScheduleAccepted(
            message=f"Call scheduled for {formatted}. You can close this page.",
            delay_minutes=delay_minutes,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_status(self) -> StatusReport:
        async with self._store.slot(self.entity_id) as slot:
            call = await slot.get()
            now = self._clock()
        if call is None:
            return StatusReport.nothing_scheduled()
        return StatusReport.for_call(call, now)

    # ------------------------------------------------------------------
    # Wake
    # ------------------------------------------------------------------

    async def on_wake(self, due_at_ms: Optional[int] = None) -> WakeOutcome:
        """Handle one (possibly duplicate or stale) wake delivery.

        ``due_at_ms`` is the due time the trigger was armed for; ``None``
        means "whatever is currently scheduled". Provider failures end up as
        FAILED and never raise. Storage errors do raise, leaving the record
        untouched so the next delivery can try again.
        """
        log = logger.bind(entity_id=self.entity_id, due_at_ms=due_at_ms)

        async with self._store.slot(self.entity_id) as slot:
            call = await slot.get()

            if call is None:
                log.info("wake_ignored", reason=WakeOutcome.MISSING.value)
                return WakeOutcome.MISSING
            if call.status is not CallStatus.PENDING:
                log.info("wake_ignored", reason=WakeOutcome.STALE.value, status=call.status.value)
                return WakeOutcome.STALE
            if due_at_ms is not None and due_at_ms != call.scheduled_at_ms:
                log.info(
                    "wake_ignored",
                    reason=WakeOutcome.SUPERSEDED.value,
                    current_due_at_ms=call.scheduled_at_ms,
                )
                return WakeOutcome.SUPERSEDED
            if self._clock() < call.scheduled_at_ms:
                await self._trigger.arm(self.entity_id, call.scheduled_at_ms)
                log.warning("wake_early_rearmed", current_due_at_ms=call.scheduled_at_ms)
                return WakeOutcome.EARLY

            result = await self._invoke(call)
            settled = call.settle(result)
            await slot.put(settled)

        if result.ok:
            log.info("call_completed", confirmation_id=result.confirmation_id)
            return WakeOutcome.COMPLETED
        log.error("call_failed", error=result.error_detail)
        return WakeOutcome.FAILED

    async def _invoke(self, call: ScheduledCall) -> CallResult:
        """Run the provider call off the event loop, folding every error into a result."""
        try:
            loop = asyncio.get_running_loop()
            return await asyncio.wait_for(
                loop.run_in_executor(_PROVIDER_POOL, self._place_call, call.target),
                timeout=self._call_timeout,
            )
        except asyncio.TimeoutError:
            return CallResult.failure(f"provider call timed out after {self._call_timeout}s")
        except Exception as exc:  # noqa: BLE001
            logger.exception("call_provider_error", entity_id=self.entity_id)
            return CallResult.failure(f"{type(exc).__name__}: {exc}")


# ──────────────────────────────────────────────────────────────────────
# Factory
# ──────────────────────────────────────────────────────────────────────


@lru_cache(maxsize=1)
def _backends() -> tuple[ScheduleStore, WakeTrigger]:
    backend = settings.SCHEDULE_BACKEND
    if backend == "memory":
        # The asyncio trigger calls straight back into the scheduler living in
        # this process.
        async def _wake(entity_id: str, due_at_ms: int) -> WakeOutcome:
            return await get_call_scheduler(entity_id).on_wake(due_at_ms)

        return MemoryScheduleStore(), AsyncioWakeTrigger(_wake)
    if backend == "postgres":
        from db import SqlScheduleStore

        return SqlScheduleStore(), CeleryWakeTrigger()
    raise ValueError(f"Unsupported SCHEDULE_BACKEND: {backend!r}")


def get_call_scheduler(entity_id: Optional[str] = None) -> CallScheduler:
    """Build the scheduler for ``entity_id`` from settings."""
    store, trigger = _backends()
    return CallScheduler(
        entity_id or settings.SCHEDULER_ENTITY_ID,
        store,
        trigger,
        calls.place_call,
        calls.configured_target(),
        tz_name=settings.DEFAULT_TIMEZONE,
        call_timeout=settings.CALL_TIMEOUT_SECONDS,
        min_delay=settings.MIN_DELAY_MINUTES,
        max_delay=settings.MAX_DELAY_MINUTES,
    )


def reset_backends() -> None:
    """Forget cached backends (tests, settings reloads)."""
    _backends.cache_clear()
