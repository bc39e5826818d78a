"""Delivery worker: turns one ``NotificationJob`` into at most one SMS.

Everything that could have changed since the scanner enqueued the job is
re-checked here (active flag, opt-in, phone, quiet hours, pending tasks,
today's ledger). Delivery-time state always wins, which is how a STOP that
arrives after enqueue cancels the send without touching the queue.

A job carries the user-local day it was scheduled for. Once that day is over
locally (a quiet-hours deferral that ran past midnight) the job expires; it
never lands on the next day's slot.

Retries go back through the queue with an ``eta``; nothing here sleeps.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Mapping

from app.services.errors import (
    IdempotencyNoOp, TerminalGatewayError, TransientGatewayError, ValidationError
)
from app.services.idempotency import IdempotencyGuard
from app.services.queue import JobQueue, RetryPolicy
from app.services.schedule import (
    ScheduleConfig, is_quiet_hours, local_day, local_day_bounds, next_window_start, resolve_zone
)
from app.types.sms_contract import DeliveryOutcome, MessageType, NotificationJob, UserSnapshot
from app.utils import metrics
from app.utils.clock import Clock
from app.utils.sms import Gateway, is_valid_phone_number, mask_phone
from db.users import UserStore

_LOGGER = logging.getLogger(__name__)

OPT_OUT_FOOTER = "Reply STOP to opt out"


def build_message(
    user: UserSnapshot,
    message_type: MessageType,
    deep_links: Mapping[MessageType, str],
    pending_count: int | None = None,
) -> str:
    first_name = user.first_name
    link = deep_links[message_type]
    if message_type is MessageType.MORNING_NUDGE:
        greeting = f"Good morning {first_name}!" if first_name else "Good morning!"
        text = f"{greeting} Ready to crush your goals today? Check your daily plan: {link}"
    else:
        greeting = f"Hi {first_name}!" if first_name else "Hi!"
        count = pending_count or 0
        noun = "task" if count == 1 else "tasks"
        text = f"{greeting} You have {count} {noun} pending. Complete them before bed: {link}"
    return f"{text}\n\n{OPT_OUT_FOOTER}"


class DeliveryWorker:
    def __init__(
        self,
        users: UserStore,
        guard: IdempotencyGuard,
        queue: JobQueue,
        gateway: Gateway,
        clock: Clock,
        config: ScheduleConfig,
        retry: RetryPolicy,
        deep_links: Mapping[MessageType, str],
        send_timeout: float = 5.0,
        dead_letter_retention: int = 7 * 24 * 3600,
        max_defer_seconds: int | None = None,
    ):
        self.users = users
        self.guard = guard
        self.ledger = guard.ledger
        self.queue = queue
        self.gateway = gateway
        self.clock = clock
        self.config = config
        self.retry = retry
        self.deep_links = deep_links
        self.send_timeout = send_timeout
        self.dead_letter_retention = dead_letter_retention
        self.max_defer_seconds = max_defer_seconds

    async def process(self, job: NotificationJob) -> DeliveryOutcome:
        mtype = job.message_type.value
        with metrics.SMS_PROCESSING_DURATION.labels(type=mtype).time():
            outcome = await self._process(job)
        metrics.SMS_SENT.labels(type=mtype, status=outcome.value).inc()
        return outcome

    async def _process(self, job: NotificationJob) -> DeliveryOutcome:
        now = self.clock.now()
        mtype = job.message_type

        user = await self.users.get(job.user_id)
        if user is None:
            _LOGGER.warning("[Worker] job %s: user %s not found, skipping", job.job_id, job.user_id)
            return DeliveryOutcome.SKIPPED
        if not user.is_active or not user.sms_opt_in:
            _LOGGER.info("[Worker] job %s: user %s inactive or opted out, skipping", job.job_id, user.id)
            return await self._release(job, DeliveryOutcome.SKIPPED, "user inactive or opted out")

        try:
            phone = self._phone_for(user)
            zone = resolve_zone(user.timezone, self.config.default_timezone)
        except ValidationError as exc:
            _LOGGER.warning("[Worker] job %s dropped: %s", job.job_id, exc)
            return await self._release(job, DeliveryOutcome.DROPPED, str(exc))

        today = local_day(now, zone)
        if job.local_day is not None and job.local_day != today:
            _LOGGER.info(
                "[Worker] job %s: scheduled for %s, now %s in %s; expired", job.job_id, job.local_day, today, zone.key
            )
            return await self._release(job, DeliveryOutcome.EXPIRED, f"expired: scheduled for {job.local_day}")

        if not job.force and is_quiet_hours(
            now, zone, self.config.quiet_start_hour, self.config.quiet_end_hour
        ):
            eta = next_window_start(now, zone, self.config.quiet_end_hour)
            if self.max_defer_seconds:
                eta = min(eta, now + timedelta(seconds=self.max_defer_seconds))
            self.queue.enqueue(job, eta=eta)
            metrics.SMS_QUIET_HOURS_SKIPPED.labels(type=mtype.value).inc()
            _LOGGER.info(
                "[Worker] job %s: quiet hours in %s, deferred to %s", job.job_id, zone.key, eta.isoformat()
            )
            return DeliveryOutcome.DEFERRED

        pending = None
        if mtype is MessageType.EVENING_REMINDER:
            start, end = local_day_bounds(today, zone)
            pending = await self.users.pending_task_count(user.id, start, end)
            if pending == 0:
                _LOGGER.info("[Worker] job %s: no pending tasks, skipping evening reminder", job.job_id)
                return await self._release(job, DeliveryOutcome.SKIPPED, "no pending tasks")

        body = build_message(user, mtype, self.deep_links, pending)
        try:
            record_id = await self.guard.claim(
                user, mtype, now, body,
                attempt=job.attempt, bypass_guard=job.bypass_guard, job_id=job.job_id,
            )
        except IdempotencyNoOp as exc:
            _LOGGER.info("[Worker] job %s is a no-op: %s", job.job_id, exc)
            return DeliveryOutcome.DUPLICATE

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self.gateway.send, phone, body), timeout=self.send_timeout
            )
        except asyncio.TimeoutError:
            exc = TransientGatewayError(f"gateway call exceeded {self.send_timeout}s")
            return await self._on_transient(job, record_id, exc, now)
        except TransientGatewayError as exc:
            return await self._on_transient(job, record_id, exc, now)
        except TerminalGatewayError as exc:
            detail = exc.detail()
            await self.ledger.mark_failed(record_id, detail)
            await self.ledger.dead_letter(job, detail, now, self.dead_letter_retention)
            _LOGGER.error(
                "[Worker] job %s: terminal failure to %s, not retrying: %s", job.job_id, mask_phone(phone), detail
            )
            return DeliveryOutcome.FAILED

        await self.ledger.mark_sent(record_id, result.provider_message_id, self.clock.now())
        _LOGGER.info(
            "[Worker] job %s: %s sent to user %s (record=%s provider_id=%s attempt=%d)",
            job.job_id, mtype.value, user.id, record_id, result.provider_message_id, job.attempt,
        )
        return DeliveryOutcome.SENT

    def _phone_for(self, user: UserSnapshot) -> str:
        if not is_valid_phone_number(user.phone):
            raise ValidationError(f"user {user.id} has invalid phone {mask_phone(user.phone)}")
        return user.phone

    async def _release(self, job: NotificationJob, outcome: DeliveryOutcome, reason: str) -> DeliveryOutcome:
        # Only retries can hold a record at this point.
        if job.attempt > 1 and await self.ledger.release_job(job.job_id, reason):
            _LOGGER.info("[Worker] job %s released its held record: %s", job.job_id, reason)
        return outcome

    async def _on_transient(
        self, job: NotificationJob, record_id: int, exc: TransientGatewayError, now: datetime
    ) -> DeliveryOutcome:
        detail = exc.detail()

        if self.retry.exhausted(job.attempt):
            final = f"gave up after {job.attempt} attempts: {detail}"
            await self.ledger.mark_failed(record_id, final)
            await self.ledger.dead_letter(job, final, now, self.dead_letter_retention)
            _LOGGER.error("[Worker] job %s: %s", job.job_id, final)
            return DeliveryOutcome.FAILED

        # The record stays queued so the day remains claimed during the backoff.
        await self.ledger.note_retry(record_id, detail)
        delay = self.retry.delay_for(job.attempt)
        self.queue.enqueue(job.next_attempt(now), eta=now + timedelta(seconds=delay))
        _LOGGER.warning(
            "[Worker] job %s attempt %d failed (%s); retrying in %ds", job.job_id, job.attempt, detail, delay
        )
        return DeliveryOutcome.RETRY_SCHEDULED
