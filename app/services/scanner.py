"""Eligibility scanner.

One tick walks every active, opted-in user with a phone on file, converts the
current instant to the user's local time and enqueues a ``NotificationJob``
for each message type that is due and not yet sent today.

"Due" is ``target <= local time`` outside quiet hours, plus a ledger lookup,
never an exact-minute match, so a late, skipped or doubled tick still produces
one send per local day. Nothing is enqueued once quiet hours start; a reminder
missed before then is not carried into the night or the next morning.

The ledger lookup runs inside a transaction that holds the user's row
(``FOR UPDATE SKIP LOCKED``), so overlapping scans and an in-flight STOP never
interleave on the same user. Each job is stamped with the local day it was
scheduled for.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict

from app.services.errors import ValidationError
from app.services.idempotency import IdempotencyGuard
from app.services.queue import JobQueue
from app.services.schedule import (
    ScheduleConfig, is_due, is_quiet_hours, local_day, local_day_bounds, resolve_zone
)
from app.types.sms_contract import MessageType, NotificationJob, UserSnapshot
from app.utils.clock import Clock
from app.utils.sms import is_valid_phone_number, mask_phone
from db.users import UserStore

_LOGGER = logging.getLogger(__name__)


@dataclass
class ScanSummary:
    users_seen: int = 0
    enqueued: Dict[str, int] = field(default_factory=lambda: {t.value: 0 for t in MessageType})
    invalid_phone: int = 0
    invalid_timezone: int = 0
    locked: int = 0
    failure_capped: int = 0
    quiet_hours: int = 0
    errors: int = 0

    @property
    def total_enqueued(self) -> int:
        return sum(self.enqueued.values())


class EligibilityScanner:
    def __init__(
        self,
        users: UserStore,
        guard: IdempotencyGuard,
        queue: JobQueue,
        clock: Clock,
        config: ScheduleConfig,
    ):
        self.users = users
        self.guard = guard
        self.queue = queue
        self.clock = clock
        self.config = config

    async def scan_once(self) -> ScanSummary:
        now = self.clock.now()
        summary = ScanSummary()
        for user in await self.users.candidates():
            summary.users_seen += 1
            try:
                await self._scan_user(user, now, summary)
            except Exception:  # noqa: BLE001
                summary.errors += 1
                _LOGGER.exception("[Scanner] user %s failed; continuing", user.id)

        if summary.total_enqueued or summary.errors:
            _LOGGER.info(
                "[Scanner] tick at %s: users=%d enqueued=%s errors=%d",
                now.isoformat(), summary.users_seen, summary.enqueued, summary.errors,
            )
        return summary

    async def run(self, interval: float, ticks: int | None = None) -> None:
        """Tick forever (or *ticks* times), sleeping *interval* seconds between ticks."""
        done = 0
        while ticks is None or done < ticks:
            try:
                await self.scan_once()
            except Exception:  # noqa: BLE001
                _LOGGER.exception("[Scanner] tick failed")
            done += 1
            if ticks is None or done < ticks:
                await self.clock.sleep(interval)

    async def _scan_user(self, user: UserSnapshot, now: datetime, summary: ScanSummary) -> None:
        if not is_valid_phone_number(user.phone):
            summary.invalid_phone += 1
            _LOGGER.warning("[Scanner] user %s has invalid phone %s, skipping", user.id, mask_phone(user.phone))
            return
        try:
            zone = resolve_zone(user.timezone, self.config.default_timezone)
        except ValidationError as exc:
            summary.invalid_timezone += 1
            _LOGGER.warning("[Scanner] user %s: %s, skipping", user.id, exc)
            return
        if is_quiet_hours(now, zone, self.config.quiet_start_hour, self.config.quiet_end_hour):
            summary.quiet_hours += 1
            return

        for message_type in MessageType:
            if not is_due(now, zone, self.config.target(message_type)):
                continue
            if await self._enqueue_if_due(user, message_type, now, zone, summary):
                summary.enqueued[message_type.value] += 1

    async def _enqueue_if_due(self, user, message_type, now, zone, summary) -> bool:
        async with self.users.transaction() as session:
            locked = await self.users.lock_for_scan(session, user.id)
            if locked is None:
                summary.locked += 1
                return False
            if not (locked.is_active and locked.sms_opt_in):
                return False
            if await self.guard.already_sent(locked, message_type, now, session=session):
                return False
            failures = await self.guard.failures_today(locked, message_type, now, session=session)
            if failures >= self.config.max_daily_failures:
                summary.failure_capped += 1
                _LOGGER.debug(
                    "[Scanner] user %s %s: %d failures today, not retrying", user.id, message_type.value, failures
                )
                return False
            today = local_day(now, zone)
            if message_type is MessageType.EVENING_REMINDER:
                start, end = local_day_bounds(today, zone)
                pending = await self.users.pending_task_count(user.id, start, end, session=session)
                if pending == 0:
                    _LOGGER.debug("[Scanner] user %s has no pending tasks, no evening reminder", user.id)
                    return False

            job = NotificationJob(
                user_id=user.id, message_type=message_type, enqueued_at=now, local_day=today
            )
            self.queue.enqueue(job)
            _LOGGER.info(
                "[Scanner] queued %s for user %s (tz=%s job=%s)",
                message_type.value, user.id, zone.key, job.job_id,
            )
            return True
