"""Pydantic models that define the contract between the call scheduler, the
HTTP front end and the Celery wake handler.

Like the rest of ``app.types`` these are framework-agnostic: no FastAPI, no
SQLAlchemy, no Celery imports.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

NO_CALL_SCHEDULED = "no_call_scheduled"
INVALID_DELAY_MESSAGE = "Invalid delay. Must be {low}-{high} minutes."


class InvalidDelayError(ValueError):
    """The requested delay is missing, non-numeric or out of range."""


class CallStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not CallStatus.PENDING


class WakeOutcome(str, Enum):
    """What a single wake delivery did."""

    COMPLETED = "completed"
    FAILED = "failed"
    MISSING = "missing"  # nothing stored for the entity
    STALE = "stale"  # record already terminal
    SUPERSEDED = "superseded"  # wake armed for an overwritten schedule
    EARLY = "early"  # delivered before the due time, re-armed


# ──────────────────────────────
# Stored record
# ──────────────────────────────


class CallTarget(BaseModel):
    """Addressing for the outbound call."""

    model_config = ConfigDict(frozen=True)

    to_number: str
    from_number: str


class CallResult(BaseModel):
    """Outcome of asking the telephony provider to place a call."""

    ok: bool
    confirmation_id: Optional[str] = None
    error_detail: Optional[str] = None

    @classmethod
    def success(cls, confirmation_id: str) -> "CallResult":
        return cls(ok=True, confirmation_id=confirmation_id)

    @classmethod
    def failure(cls, error_detail: str) -> "CallResult":
        return cls(ok=False, error_detail=error_detail)


class ScheduledCall(BaseModel):
    """The single scheduled call owned by a scheduler entity.

    ``scheduled_at_ms`` and ``target`` never change after creation; ``status``
    moves from PENDING to a terminal value exactly once (see :meth:`settle`).
    """

    model_config = ConfigDict(frozen=True)

    entity_id: str
    scheduled_at_ms: int
    target: CallTarget
    status: CallStatus = CallStatus.PENDING

    def remaining_ms(self, now_ms: int) -> int:
        return max(0, self.scheduled_at_ms - now_ms)

    def settle(self, result: CallResult) -> "ScheduledCall":
        """Return the terminal copy of this record for ``result``."""
        if self.status.is_terminal:
            raise ValueError(f"call for {self.entity_id} already {self.status.value}")
        status = CallStatus.COMPLETED if result.ok else CallStatus.FAILED
        return self.model_copy(update={"status": status})


# ──────────────────────────────
# API payloads
# ──────────────────────────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ScheduleAccepted(_CamelModel):
    success: bool = True
    message: str
    delay_minutes: int


class StatusReport(_CamelModel):
    status: str
    scheduled_time: Optional[int] = None
    remaining_ms: Optional[int] = Field(default=None, ge=0)

    @classmethod
    def nothing_scheduled(cls) -> "StatusReport":
        return cls(status=NO_CALL_SCHEDULED)

    @classmethod
    def for_call(cls, call: ScheduledCall, now_ms: int) -> "StatusReport":
        return cls(
            status=call.status.value,
            scheduled_time=call.scheduled_at_ms,
            remaining_ms=call.remaining_ms(now_ms),
        )


# ──────────────────────────────
# Input validation
# ──────────────────────────────


def parse_delay(raw: Union[int, str, None], low: int = 1, high: int = 60) -> int:
    """Validate a delay in whole minutes.

    Accepts an int or a string containing only an integer. Everything else
    (None, bools, floats, "5min", "") raises :class:`InvalidDelayError`.
    """
    message = INVALID_DELAY_MESSAGE.format(low=low, high=high)

    if isinstance(raw, bool):
        raise InvalidDelayError(message)
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, str):
        text = raw.strip()
        digits = text[1:] if text.startswith(("+", "-")) else text
        if not digits.isdigit() or not digits.isascii():
            raise InvalidDelayError(message)
        try:
            value = int(text)
        except ValueError:
            # int() refuses strings past the interpreter digit limit.
            raise InvalidDelayError(message) from None
    else:
        raise InvalidDelayError(message)

    if value < low or value > high:
        raise InvalidDelayError(message)
    return value
