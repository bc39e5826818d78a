"""Read side of the user/task tables plus the opt-in flag this service owns."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.types.sms_contract import UserSnapshot
from db.db import DailyTask, User

_LOGGER = logging.getLogger(__name__)


def _snapshot(user: User) -> UserSnapshot:
    return UserSnapshot(
        id=user.id,
        name=user.name,
        phone=user.phone,
        timezone=user.timezone,
        sms_opt_in=bool(user.sms_opt_in),
        is_active=bool(user.is_active),
    )


class UserStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def get(self, user_id: int) -> UserSnapshot | None:
        async with self._session_maker() as s:
            user = await s.get(User, user_id)
            return _snapshot(user) if user else None

    async def candidates(self) -> Sequence[UserSnapshot]:
        """Active, opted-in users with a phone on file."""
        stmt = (
            select(User)
            .where(
                User.is_active.is_(True),
                User.sms_opt_in.is_(True),
                User.phone.is_not(None),
            )
            .order_by(User.id)
        )
        async with self._session_maker() as s:
            return [_snapshot(u) for u in (await s.execute(stmt)).scalars()]

    async def lock_for_scan(self, session: AsyncSession, user_id: int) -> UserSnapshot | None:
        """Re-read a user under ``FOR UPDATE SKIP LOCKED`` inside *session*'s transaction.

        ``None`` means the row is gone or another transaction (a concurrent
        scan, an in-flight STOP) holds it.
        """
        stmt = select(User).where(User.id == user_id).with_for_update(skip_locked=True)
        user = (await session.execute(stmt)).scalar_one_or_none()
        return _snapshot(user) if user else None

    async def pending_task_count(
        self,
        user_id: int,
        start_utc: datetime,
        end_utc: datetime,
        session: AsyncSession | None = None,
    ) -> int:
        stmt = select(func.count(DailyTask.id)).where(
            DailyTask.user_id == user_id,
            DailyTask.status == "pending",
            DailyTask.due_date >= start_utc,
            DailyTask.due_date < end_utc,
        )
        if session is not None:
            return int((await session.execute(stmt)).scalar_one())
        async with self._session_maker() as s:
            return int((await s.execute(stmt)).scalar_one())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._session_maker() as s:
            async with s.begin():
                yield s

    async def set_opt_in_by_phone(self, phone: str, opt_in: bool) -> list[int]:
        """Flip ``sms_opt_in`` for every user on *phone* under a row lock.

        Returns the ids that were touched (empty when the number is unknown).
        """
        async with self._session_maker() as s:
            async with s.begin():
                users = (
                    await s.execute(select(User).where(User.phone == phone).with_for_update())
                ).scalars().all()
                for user in users:
                    user.sms_opt_in = opt_in
                touched = [u.id for u in users]
        if touched:
            _LOGGER.info("[Users] sms_opt_in=%s for users %s", opt_in, touched)
        return touched
