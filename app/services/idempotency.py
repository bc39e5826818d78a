"""Once-per-local-day guard shared by the scanner, the worker and the manual trigger.

The question is always "has a non-failed SendRecord for (user, type) been
written for the user's *current local calendar day*?". The day is computed in
the user's own timezone, so a single scan covering many zones gets each one
right.

A record whose job is waiting out a retry backoff stays ``queued`` and keeps
holding the day; it turns ``failed`` only when the job gives up.
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.services.errors import IdempotencyNoOp
from app.services.schedule import local_day, resolve_zone
from app.types.sms_contract import MessageType, UserSnapshot
from db.ledger import Ledger


class IdempotencyGuard:
    def __init__(self, ledger: Ledger, default_timezone: str):
        self.ledger = ledger
        self.default_timezone = default_timezone

    def day_for(self, user: UserSnapshot, instant: datetime) -> date:
        return local_day(instant, resolve_zone(user.timezone, self.default_timezone))

    async def already_sent(
        self,
        user: UserSnapshot,
        message_type: MessageType,
        instant: datetime,
        session: AsyncSession | None = None,
    ) -> bool:
        return await self.ledger.has_active(
            user.id, message_type.value, self.day_for(user, instant), session=session
        )

    async def failures_today(
        self,
        user: UserSnapshot,
        message_type: MessageType,
        instant: datetime,
        session: AsyncSession | None = None,
    ) -> int:
        return await self.ledger.failures(
            user.id, message_type.value, self.day_for(user, instant), session=session
        )

    async def claim(
        self,
        user: UserSnapshot,
        message_type: MessageType,
        instant: datetime,
        body: str,
        attempt: int = 1,
        bypass_guard: bool = False,
        job_id: str | None = None,
    ) -> int:
        """Atomically reserve today's slot and return the SendRecord id.

        A retry of *job_id* gets back the record its first attempt claimed.
        Raises ``IdempotencyNoOp`` when the slot is already taken.
        """
        day = self.day_for(user, instant)
        record_id = await self.ledger.claim(
            user.id, message_type.value, day, body,
            attempt=attempt, bypass_guard=bypass_guard, job_id=job_id,
        )
        if record_id is None:
            raise IdempotencyNoOp(f"{message_type.value} already recorded for user {user.id} on {day}")
        return record_id
