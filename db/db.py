"""
Async DB helpers for the call scheduler.
Uses SQLAlchemy 2.0 + asyncpg driver – no raw SQL strings in app code
(apart from the advisory-lock call, which has no ORM spelling).
"""

from __future__ import annotations

import hashlib
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, AsyncIterator

from sqlalchemy import BigInteger, DateTime, String, func, select, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession
)

from app.types.scheduling import CallStatus, CallTarget, ScheduledCall

# ──────────────────────────────────────────────────────────────────────
# 1. Declarative metadata
# ──────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    pass

# ──────────────────────────────────────────────────────────────────────
# 2. Lazy engine / session factory
# ──────────────────────────────────────────────────────────────────────
_engine = None
_session_maker: async_sessionmaker[AsyncSession] | None = None

def _build_url() -> str:
    url = os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    if "+asyncpg" not in url:
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url

def get_engine():
    global _engine
    if _engine is None:
        _engine = create_async_engine(_build_url(), pool_size=5, max_overflow=5)
    return _engine

def _get_session_maker() -> async_sessionmaker[AsyncSession]:
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_maker

def get_session() -> AsyncGenerator[AsyncSession, None]:
    session_maker = _get_session_maker()
    async def _session_scope():
        async with session_maker() as session:
            yield session
    return _session_scope()

# ──────────────────────────────────────────────────────────────────────
# 3. ORM models
# ──────────────────────────────────────────────────────────────────────

class ScheduledCallRow(Base):
    __tablename__ = "scheduled_calls"

    entity_id:       Mapped[str] = mapped_column(String(128), primary_key=True)
    scheduled_at_ms: Mapped[int] = mapped_column(BigInteger)
    to_number:       Mapped[str]
    from_number:     Mapped[str]
    status:          Mapped[str] = mapped_column(String(16), default=CallStatus.PENDING.value, index=True)
    created_at:      Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at:      Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def to_model(self) -> ScheduledCall:
        return ScheduledCall(
            entity_id=self.entity_id,
            scheduled_at_ms=self.scheduled_at_ms,
            target=CallTarget(to_number=self.to_number, from_number=self.from_number),
            status=CallStatus(self.status),
        )


# ──────────────────────────────────────────────────────────────────────
# 4. DDL helper (run once at startup or from Alembic)
# ──────────────────────────────────────────────────────────────────────
async def create_all():
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ──────────────────────────────────────────────────────────────────────
# 5. Schedule store (one row per scheduler entity)
# ──────────────────────────────────────────────────────────────────────

def advisory_lock_key(entity_id: str) -> int:
    """Stable signed-bigint key for pg_advisory_xact_lock."""
    digest = hashlib.blake2b(entity_id.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=False) & 0x7FFF_FFFF_FFFF_FFFF


class _SqlSlot:
    def __init__(self, session: AsyncSession, entity_id: str) -> None:
        self._session = session
        self._entity_id = entity_id

    async def get(self) -> ScheduledCall | None:
        row = await self._session.get(ScheduledCallRow, self._entity_id, populate_existing=True)
        return row.to_model() if row else None

    async def put(self, call: ScheduledCall) -> None:
        if call.entity_id != self._entity_id:
            raise ValueError(f"slot {self._entity_id} cannot hold {call.entity_id}")
        await self._session.merge(
            ScheduledCallRow(
                entity_id=call.entity_id,
                scheduled_at_ms=call.scheduled_at_ms,
                to_number=call.target.to_number,
                from_number=call.target.from_number,
                status=call.status.value,
            )
        )


class SqlScheduleStore:
    """Each slot is one transaction holding the entity's advisory lock.

    The lock is released on commit/rollback, so concurrent API requests and
    Celery wake deliveries for the same entity run strictly one at a time.
    """

    @asynccontextmanager
    async def slot(self, entity_id: str) -> AsyncIterator[_SqlSlot]:
        async with _get_session_maker()() as session:
            async with session.begin():
                await session.execute(
                    text("SELECT pg_advisory_xact_lock(:key)"),
                    {"key": advisory_lock_key(entity_id)},
                )
                yield _SqlSlot(session, entity_id)


# 5.1 Due scan ---------------------------------------------------------
async def fetch_due_calls(now_ms: int, limit: int = 100) -> list[dict]:
    """PENDING calls whose due time has passed (oldest first)."""
    async for s in get_session():
        stmt = (
            select(ScheduledCallRow.entity_id, ScheduledCallRow.scheduled_at_ms)
            .where(
                ScheduledCallRow.status == CallStatus.PENDING.value,
                ScheduledCallRow.scheduled_at_ms <= now_ms,
            )
            .order_by(ScheduledCallRow.scheduled_at_ms)
            .limit(limit)
        )
        res = await s.execute(stmt)
        return [
            {"entity_id": entity_id, "scheduled_at_ms": scheduled_at_ms}
            for entity_id, scheduled_at_ms in res.all()
        ]
    return []


async def dispose_engine():
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_maker = None
