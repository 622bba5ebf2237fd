import asyncio
import time

import pytest

from app.types.scheduling import (
    CallResult,
    CallStatus,
    InvalidDelayError,
    WakeOutcome,
)
from conftest import ENTITY, START_MS, TARGET, FakeProvider


# ---------------------------------------------------------------------------
# schedule()
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("delay", [1, 60, "1", " 60 "])
async def test_schedule_accepts_inclusive_bounds(scheduler, store, trigger, delay):
    accepted = await scheduler.schedule(delay)

    minutes = int(str(delay).strip())
    assert accepted.success is True
    assert accepted.delay_minutes == minutes
    call = store.peek(ENTITY)
    assert call.status is CallStatus.PENDING
    assert call.scheduled_at_ms == START_MS + minutes * 60_000
    assert call.target == TARGET
    assert trigger.armed == [(ENTITY, call.scheduled_at_ms)]


@pytest.mark.asyncio
async def test_schedule_message_uses_local_time(make_scheduler, provider):
    scheduler = make_scheduler(provider)
    accepted = await scheduler.schedule(10)
    # 2026-01-01T00:10:00Z in UTC
    assert accepted.message == "Call scheduled for 12:10:00 AM. You can close this page."
    assert accepted.to_json_dict() == {
        "success": True,
        "message": accepted.message,
        "delayMinutes": 10,
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("delay", [0, 61, -1, "abc", "", None, "5.5", 2.0, True])
async def test_schedule_rejects_bad_delay_and_keeps_existing_record(
    scheduler, store, trigger, delay
):
    await scheduler.schedule(5)
    before = store.peek(ENTITY)

    with pytest.raises(InvalidDelayError, match="Invalid delay"):
        await scheduler.schedule(delay)

    assert store.peek(ENTITY) == before
    assert len(trigger.armed) == 1


@pytest.mark.asyncio
async def test_rejected_first_schedule_writes_nothing(scheduler, store, trigger):
    with pytest.raises(InvalidDelayError):
        await scheduler.schedule(0)
    assert store.peek(ENTITY) is None
    assert trigger.armed == []
    assert (await scheduler.get_status()).to_json_dict() == {"status": "no_call_scheduled"}


@pytest.mark.asyncio
async def test_schedule_overwrites_terminal_record(scheduler, store, clock):
    await scheduler.schedule(1)
    clock.advance(60_000)
    assert await scheduler.on_wake(START_MS + 60_000) is WakeOutcome.COMPLETED

    await scheduler.schedule(2)

    call = store.peek(ENTITY)
    assert call.status is CallStatus.PENDING
    assert call.scheduled_at_ms == clock.now + 120_000


# ---------------------------------------------------------------------------
# get_status()
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_status_before_any_schedule(scheduler):
    report = await scheduler.get_status()
    assert report.to_json_dict() == {"status": "no_call_scheduled"}


@pytest.mark.asyncio
async def test_status_projection_counts_down_and_floors_at_zero(scheduler, clock, trigger):
    await scheduler.schedule(10)

    first = await scheduler.get_status()
    assert first.to_json_dict() == {
        "status": "PENDING",
        "scheduledTime": START_MS + 600_000,
        "remainingMs": 600_000,
    }

    seen = [first.remaining_ms]
    for step in (1_000, 299_000, 300_000, 5_000):
        clock.advance(step)
        seen.append((await scheduler.get_status()).remaining_ms)

    assert seen == sorted(seen, reverse=True)
    assert seen[-2:] == [0, 0]
    # Reading status never arms anything.
    assert len(trigger.armed) == 1


# ---------------------------------------------------------------------------
# on_wake()
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_wake_places_call_and_completes(scheduler, provider, clock):
    await scheduler.schedule(1)
    clock.advance(60_000)

    outcome = await scheduler.on_wake(START_MS + 60_000)

    assert outcome is WakeOutcome.COMPLETED
    assert provider.calls == [TARGET]
    status = (await scheduler.get_status()).to_json_dict()
    assert status == {
        "status": "COMPLETED",
        "scheduledTime": START_MS + 60_000,
        "remainingMs": 0,
    }


@pytest.mark.asyncio
async def test_duplicate_wake_does_not_call_twice(scheduler, provider, clock):
    await scheduler.schedule(1)
    clock.advance(60_000)

    assert await scheduler.on_wake(START_MS + 60_000) is WakeOutcome.COMPLETED
    assert await scheduler.on_wake(START_MS + 60_000) is WakeOutcome.STALE
    assert await scheduler.on_wake() is WakeOutcome.STALE
    assert len(provider.calls) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "provider_kwargs",
    [
        {"result": CallResult.failure("Invalid 'to' number")},
        {"exc": ConnectionError("connection reset")},
        {"exc": RuntimeError("unexpected")},
    ],
    ids=["rejected", "transport-error", "bug"],
)
async def test_wake_failure_modes_end_failed(make_scheduler, clock, provider_kwargs):
    provider = FakeProvider(**provider_kwargs)
    scheduler = make_scheduler(provider)
    await scheduler.schedule(1)
    clock.advance(60_000)

    outcome = await scheduler.on_wake(START_MS + 60_000)

    assert outcome is WakeOutcome.FAILED
    assert (await scheduler.get_status()).to_json_dict()["status"] == "FAILED"
    # Terminal state absorbs later wakes.
    assert await scheduler.on_wake(START_MS + 60_000) is WakeOutcome.STALE
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_wake_provider_timeout_ends_failed(make_scheduler, clock):
    def slow_provider(target):
        time.sleep(0.3)
        return CallResult.success("late")

    scheduler = make_scheduler(slow_provider, call_timeout=0.05)
    await scheduler.schedule(1)
    clock.advance(60_000)

    assert await scheduler.on_wake(START_MS + 60_000) is WakeOutcome.FAILED
    assert (await scheduler.get_status()).status == CallStatus.FAILED.value


def test_timed_out_provider_does_not_hold_up_asyncio_run(make_scheduler, clock):
    # Celery tasks drive the scheduler through asyncio.run(), which joins the
    # loop's default executor before returning.
    def hung_provider(target):
        time.sleep(1.0)
        return CallResult.success("late")

    scheduler = make_scheduler(hung_provider, call_timeout=0.05)

    async def schedule_and_wake():
        await scheduler.schedule(1)
        clock.advance(60_000)
        return await scheduler.on_wake(START_MS + 60_000)

    started = time.monotonic()
    outcome = asyncio.run(schedule_and_wake())
    elapsed = time.monotonic() - started

    assert outcome is WakeOutcome.FAILED
    assert elapsed < 0.8


@pytest.mark.asyncio
async def test_wake_without_record_is_noop(scheduler, provider, store):
    assert await scheduler.on_wake() is WakeOutcome.MISSING
    assert await scheduler.on_wake(START_MS) is WakeOutcome.MISSING
    assert provider.calls == []
    assert store.peek(ENTITY) is None


@pytest.mark.asyncio
async def test_superseded_wake_is_noop(scheduler, provider, store, clock, trigger):
    await scheduler.schedule(5)
    await scheduler.schedule(10)

    assert [at for _, at in trigger.armed] == [START_MS + 300_000, START_MS + 600_000]
    assert store.peek(ENTITY).scheduled_at_ms == START_MS + 600_000

    # The trigger armed for the first schedule still fires.
    clock.advance(300_000)
    assert await scheduler.on_wake(START_MS + 300_000) is WakeOutcome.SUPERSEDED
    assert provider.calls == []
    assert store.peek(ENTITY).status is CallStatus.PENDING

    clock.advance(300_000)
    assert await scheduler.on_wake(START_MS + 600_000) is WakeOutcome.COMPLETED
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_early_wake_rearms_without_calling(scheduler, provider, store, clock, trigger):
    await scheduler.schedule(10)
    clock.advance(60_000)

    assert await scheduler.on_wake(START_MS + 600_000) is WakeOutcome.EARLY
    assert provider.calls == []
    assert store.peek(ENTITY).status is CallStatus.PENDING
    assert trigger.armed[-1] == (ENTITY, START_MS + 600_000)


@pytest.mark.asyncio
async def test_late_wake_still_fires(scheduler, provider, clock):
    await scheduler.schedule(1)
    clock.advance(60 * 60_000)  # an hour of clock slack / downtime

    assert await scheduler.on_wake(START_MS + 60_000) is WakeOutcome.COMPLETED
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_storage_error_leaves_record_pending(scheduler, store, clock, monkeypatch):
    await scheduler.schedule(1)
    clock.advance(60_000)

    from app.services import schedule_store

    async def broken_put(self, call):
        raise OSError("disk full")

    monkeypatch.setattr(schedule_store._MemorySlot, "put", broken_put)

    with pytest.raises(OSError):
        await scheduler.on_wake(START_MS + 60_000)
    assert store.peek(ENTITY).status is CallStatus.PENDING


# ---------------------------------------------------------------------------
# factory
# ---------------------------------------------------------------------------

@pytest.fixture
def fresh_backends():
    from app.services import call_scheduler

    call_scheduler.reset_backends()
    yield call_scheduler
    call_scheduler.reset_backends()


@pytest.mark.asyncio
async def test_memory_backend_wakes_in_process(fresh_backends, monkeypatch):
    from app.services.schedule_store import AsyncioWakeTrigger, MemoryScheduleStore

    monkeypatch.setattr(fresh_backends.settings, "SCHEDULE_BACKEND", "memory")
    provider = FakeProvider()
    monkeypatch.setattr(fresh_backends.calls, "place_call", provider)

    scheduler = fresh_backends.get_call_scheduler()
    store, trigger = fresh_backends._backends()
    assert isinstance(store, MemoryScheduleStore)
    assert isinstance(trigger, AsyncioWakeTrigger)
    assert scheduler.entity_id == fresh_backends.settings.SCHEDULER_ENTITY_ID
    # Same shared store for every scheduler built in this process.
    assert fresh_backends._backends()[0] is store

    # Arm the in-process trigger directly for a due time that has passed.
    async with store.slot(scheduler.entity_id) as slot:
        from app.types.scheduling import ScheduledCall

        await slot.put(
            ScheduledCall(
                entity_id=scheduler.entity_id,
                scheduled_at_ms=1_000,
                target=TARGET,
            )
        )
    await trigger.arm(scheduler.entity_id, 1_000)
    await trigger.drain()

    assert store.peek(scheduler.entity_id).status is CallStatus.COMPLETED
    assert provider.calls == [TARGET]


def test_unknown_backend_is_rejected(fresh_backends, monkeypatch):
    monkeypatch.setattr(fresh_backends.settings, "SCHEDULE_BACKEND", "sqlite")
    with pytest.raises(ValueError, match="SCHEDULE_BACKEND"):
        fresh_backends.get_call_scheduler()
