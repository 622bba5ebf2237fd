import pytest

from app.services.call_scheduler import CallScheduler
from app.services.schedule_store import MemoryScheduleStore
from app.types.scheduling import CallResult, CallTarget

START_MS = 1_767_225_600_000  # 2026-01-01T00:00:00Z
ENTITY = "global-scheduler"
TARGET = CallTarget(to_number="+15550001111", from_number="+15550002222")


class FakeClock:
    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingTrigger:
    def __init__(self):
        self.armed: list[tuple[str, int]] = []

    async def arm(self, entity_id: str, at_ms: int) -> None:
        self.armed.append((entity_id, at_ms))


class FakeProvider:
    """Stands in for ``app.utils.calls.place_call``."""

    def __init__(self, result: CallResult | None = None, exc: Exception | None = None):
        self.result = result or CallResult.success("v3:call-control-id")
        self.exc = exc
        self.calls: list[CallTarget] = []

    def __call__(self, target: CallTarget) -> CallResult:
        self.calls.append(target)
        if self.exc is not None:
            raise self.exc
        return self.result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def trigger():
    return RecordingTrigger()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def store():
    return MemoryScheduleStore()


@pytest.fixture
def make_scheduler(store, trigger, clock):
    def _make(provider, **kwargs) -> CallScheduler:
        return CallScheduler(
            ENTITY,
            store,
            trigger,
            provider,
            TARGET,
            clock=clock,
            tz_name="UTC",
            **kwargs,
        )

    return _make


@pytest.fixture
def scheduler(make_scheduler, provider):
    return make_scheduler(provider)
