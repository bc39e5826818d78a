"""
Async DB layer for the SMS nudge service.
Uses SQLAlchemy 2.0 + asyncpg driver – no raw SQL strings in app code.
"""

from __future__ import annotations

import os
from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, func, text
)
from sqlalchemy.orm import (
    DeclarativeBase, Mapped, mapped_column
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
)
from sqlalchemy.pool import NullPool

# ──────────────────────────────────────────────────────────────────────
# 1. Declarative metadata
# ──────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    pass

# ──────────────────────────────────────────────────────────────────────
# 2. Lazy engine / session factory
# ──────────────────────────────────────────────────────────────────────
_engine: AsyncEngine | None = None
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

def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_async_engine(_build_url(), pool_size=5, max_overflow=5)
    return _engine

def get_session_maker() -> async_sessionmaker[AsyncSession]:
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_maker

def create_task_engine() -> AsyncEngine:
    """Engine for Celery tasks.

    Each task runs its coroutine under a fresh ``asyncio.run`` loop, and asyncpg
    connections cannot cross loops, so nothing is pooled between tasks.
    """
    return create_async_engine(_build_url(), poolclass=NullPool)

# ──────────────────────────────────────────────────────────────────────
# 3. ORM models
# ──────────────────────────────────────────────────────────────────────

class User(Base):
    """Owned by the profile service; only the columns read here are mapped."""

    __tablename__ = "users"

    id:         Mapped[int] = mapped_column(Integer, primary_key=True)
    name:       Mapped[str | None] = mapped_column(String(255))
    phone:      Mapped[str | None] = mapped_column(String(20), index=True)
    timezone:   Mapped[str | None] = mapped_column(String(50), default="America/Los_Angeles")
    sms_opt_in: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active:  Mapped[bool] = mapped_column(Boolean, default=True)


class DailyTask(Base):
    """Owned by the planner service; read-only here."""

    __tablename__ = "daily_tasks"

    id:       Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id:  Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    status:   Mapped[str] = mapped_column(String(20), default="pending")
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SendRecord(Base):
    """Idempotency ledger: one row per scheduled send (retries reuse it), never deleted."""

    __tablename__ = "send_records"

    id:                  Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id:              Mapped[str | None] = mapped_column(String(36))
    user_id:             Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    message_type:        Mapped[str] = mapped_column(String(32))
    local_day:           Mapped[date] = mapped_column(Date)
    message_body:        Mapped[str] = mapped_column(Text)
    status:              Mapped[str] = mapped_column(String(16), default="queued")
    provider_message_id: Mapped[str | None] = mapped_column(String(100))
    error_detail:        Mapped[str | None] = mapped_column(Text)
    attempt:             Mapped[int] = mapped_column(Integer, default=1)
    bypass_guard:        Mapped[bool] = mapped_column(Boolean, default=False)
    created_at:          Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at:             Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delivered_at:        Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        # At most one live (non-failed) record per user, type and local day.
        Index(
            "uq_send_records_user_type_day",
            "user_id", "message_type", "local_day",
            unique=True,
            postgresql_where=text("status <> 'failed' AND NOT bypass_guard"),
            sqlite_where=text("status <> 'failed' AND NOT bypass_guard"),
        ),
        Index("ix_send_records_provider_message_id", "provider_message_id"),
        Index("ix_send_records_job_id", "job_id"),
        Index("ix_send_records_user_type_day", "user_id", "message_type", "local_day"),
    )


class DeadLetterJob(Base):
    __tablename__ = "dead_letter_jobs"

    id:           Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id:       Mapped[str] = mapped_column(String(36), index=True)
    user_id:      Mapped[int] = mapped_column(Integer)
    message_type: Mapped[str] = mapped_column(String(32))
    payload:      Mapped[dict[str, Any]] = mapped_column(JSON)
    error_detail: Mapped[str | None] = mapped_column(Text)
    failed_at:    Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at:   Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


# ──────────────────────────────────────────────────────────────────────
# 4. DDL helper (tests and local dev; production uses Alembic)
# ──────────────────────────────────────────────────────────────────────
async def create_all(engine: AsyncEngine | None = None):
    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine():
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_maker = None
