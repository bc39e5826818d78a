"""Send ledger: durable record of every SMS attempt and its outcome."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.types.sms_contract import ACTIVE_STATUSES, NotificationJob, SendStatus
from db.db import DeadLetterJob, SendRecord

_LOGGER = logging.getLogger(__name__)

# Forward-only ordering for provider status callbacks; FAILED is terminal.
_STATUS_RANK = {
    SendStatus.QUEUED.value: 0,
    SendStatus.SENT.value: 1,
    SendStatus.DELIVERED.value: 2,
}


def _active_clause(user_id: int, message_type: str, day: date):
    return (
        SendRecord.user_id == user_id,
        SendRecord.message_type == message_type,
        SendRecord.local_day == day,
        SendRecord.status.in_(ACTIVE_STATUSES),
        SendRecord.bypass_guard.is_(False),
    )


class Ledger:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    # ── reads ────────────────────────────────────────────────────────
    async def has_active(
        self,
        user_id: int,
        message_type: str,
        day: date,
        session: AsyncSession | None = None,
    ) -> bool:
        stmt = select(SendRecord.id).where(*_active_clause(user_id, message_type, day)).limit(1)
        if session is not None:
            return (await session.execute(stmt)).first() is not None
        async with self._session_maker() as s:
            return (await s.execute(stmt)).first() is not None

    async def failures(
        self,
        user_id: int,
        message_type: str,
        day: date,
        session: AsyncSession | None = None,
    ) -> int:
        stmt = select(func.count(SendRecord.id)).where(
            SendRecord.user_id == user_id,
            SendRecord.message_type == message_type,
            SendRecord.local_day == day,
            SendRecord.status == SendStatus.FAILED.value,
        )
        if session is not None:
            return int((await session.execute(stmt)).scalar_one())
        async with self._session_maker() as s:
            return int((await s.execute(stmt)).scalar_one())

    async def records_for(self, user_id: int, message_type: str | None = None) -> Sequence[SendRecord]:
        stmt = select(SendRecord).where(SendRecord.user_id == user_id)
        if message_type:
            stmt = stmt.where(SendRecord.message_type == message_type)
        stmt = stmt.order_by(SendRecord.id)
        async with self._session_maker() as s:
            return (await s.execute(stmt)).scalars().all()

    # ── writes ───────────────────────────────────────────────────────
    async def claim(
        self,
        user_id: int,
        message_type: str,
        day: date,
        body: str,
        attempt: int = 1,
        bypass_guard: bool = False,
        job_id: str | None = None,
    ) -> int | None:
        """Reserve the day's slot and return the record id, or ``None`` when it is taken.

        A retry (``attempt > 1``) of a job that still holds its ``queued``
        record takes that record over instead of inserting a new one. The
        attempt counter only moves up, so a redelivered retry message finds
        the record already at its attempt and gets ``None``.

        Otherwise a new ``queued`` record is inserted unless a live one exists
        for the day. The partial unique index backs the check when two
        workers race.
        """
        async with self._session_maker() as s:
            try:
                async with s.begin():
                    if job_id is not None and attempt > 1:
                        held = (
                            await s.execute(
                                select(SendRecord)
                                .where(
                                    SendRecord.job_id == job_id,
                                    SendRecord.status == SendStatus.QUEUED.value,
                                )
                                .with_for_update()
                            )
                        ).scalars().first()
                        if held is not None:
                            if held.attempt >= attempt:
                                return None
                            held.attempt = attempt
                            held.message_body = body
                            return held.id

                    if not bypass_guard and await self.has_active(user_id, message_type, day, session=s):
                        return None
                    record = SendRecord(
                        job_id=job_id,
                        user_id=user_id,
                        message_type=message_type,
                        local_day=day,
                        message_body=body,
                        status=SendStatus.QUEUED.value,
                        attempt=attempt,
                        bypass_guard=bypass_guard,
                    )
                    s.add(record)
                    await s.flush()
                    return record.id
            except IntegrityError:
                _LOGGER.info(
                    "[Ledger] concurrent claim lost user=%s type=%s day=%s", user_id, message_type, day
                )
                return None

    async def mark_sent(self, record_id: int, provider_message_id: str, at: datetime):
        async with self._session_maker() as s:
            await s.execute(
                update(SendRecord)
                .where(SendRecord.id == record_id)
                .values(
                    status=SendStatus.SENT.value,
                    provider_message_id=provider_message_id,
                    sent_at=at,
                )
            )
            await s.commit()

    async def mark_failed(self, record_id: int, detail: str):
        async with self._session_maker() as s:
            await s.execute(
                update(SendRecord)
                .where(SendRecord.id == record_id)
                .values(status=SendStatus.FAILED.value, error_detail=detail)
            )
            await s.commit()

    async def note_retry(self, record_id: int, detail: str):
        """Keep the record ``queued`` (it still holds the day) and keep the last error."""
        async with self._session_maker() as s:
            await s.execute(
                update(SendRecord)
                .where(SendRecord.id == record_id, SendRecord.status == SendStatus.QUEUED.value)
                .values(error_detail=detail)
            )
            await s.commit()

    async def release_job(self, job_id: str, detail: str) -> int:
        """Fail whatever ``queued`` record *job_id* still holds; returns the row count."""
        async with self._session_maker() as s:
            res = await s.execute(
                update(SendRecord)
                .where(SendRecord.job_id == job_id, SendRecord.status == SendStatus.QUEUED.value)
                .values(status=SendStatus.FAILED.value, error_detail=detail)
            )
            await s.commit()
            return res.rowcount or 0

    async def apply_provider_status(
        self,
        provider_message_id: str,
        status: SendStatus,
        at: datetime,
        detail: str | None = None,
    ) -> bool:
        """Move records for *provider_message_id* forward to *status*.

        Out-of-order callbacks never downgrade a record, and a failed record
        is never resurrected.
        """
        changed = False
        async with self._session_maker() as s:
            async with s.begin():
                rows = (
                    await s.execute(
                        select(SendRecord)
                        .where(SendRecord.provider_message_id == provider_message_id)
                        .with_for_update()
                    )
                ).scalars().all()
                for record in rows:
                    if record.status == SendStatus.FAILED.value:
                        continue
                    if status is SendStatus.FAILED:
                        record.status = SendStatus.FAILED.value
                        record.error_detail = detail or record.error_detail
                        changed = True
                    elif _STATUS_RANK[status.value] > _STATUS_RANK[record.status]:
                        record.status = status.value
                        if status is SendStatus.DELIVERED:
                            record.delivered_at = at
                        changed = True
        return changed

    # ── dead letters ────────────────────────────────────────────────
    async def dead_letter(self, job: NotificationJob, detail: str, now: datetime, retention_seconds: int):
        async with self._session_maker() as s:
            s.add(
                DeadLetterJob(
                    job_id=job.job_id,
                    user_id=job.user_id,
                    message_type=job.message_type.value,
                    payload=job.model_dump(mode="json"),
                    error_detail=detail,
                    failed_at=now,
                    expires_at=now + timedelta(seconds=retention_seconds),
                )
            )
            await s.commit()

    async def dead_letters(self) -> Sequence[DeadLetterJob]:
        async with self._session_maker() as s:
            return (await s.execute(select(DeadLetterJob).order_by(DeadLetterJob.id))).scalars().all()

    async def purge_dead_letters(self, now: datetime) -> int:
        async with self._session_maker() as s:
            res = await s.execute(delete(DeadLetterJob).where(DeadLetterJob.expires_at <= now))
            await s.commit()
            return res.rowcount or 0
