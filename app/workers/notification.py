"""Celery tasks for the SMS nudge pipeline.

Flow:
1. ``scan_due`` (beat, every minute) runs one scanner tick, which enqueues
   ``deliver`` tasks through ``CeleryJobQueue``.
2. ``deliver`` runs ``DeliveryWorker.process`` for one job. Gateway retries,
   quiet-hours deferrals and dead letters are decided there and scheduled
   back onto this queue with an ``eta``.
3. ``purge_dead_letters`` (beat, hourly) drops dead letters past retention.

Retries: an unexpected exception (database or broker down) bubbles up to
``self.retry`` with the same exponential backoff. Each task owns its own
event loop and engine.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict

import pydantic
from celery import Celery
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.celery_app import celery_app
from app.services.queue import RetryPolicy
from app.services.wiring import build_services
from app.types.sms_contract import DeliveryOutcome, NotificationJob
from app.utils.clock import SystemClock
from config import settings
import db

_LOGGER = logging.getLogger(__name__)

DELIVER_TASK = "app.workers.notification.deliver"

_retry_policy = RetryPolicy.from_settings(settings)


class CeleryJobQueue:
    """``JobQueue`` backed by Celery's delayed execution (``eta``)."""

    def __init__(self, app: Celery = celery_app, queue: str = "sms"):
        self.app = app
        self.queue = queue

    def enqueue(self, job: NotificationJob, eta: datetime | None = None) -> str:
        result = self.app.send_task(
            DELIVER_TASK,
            args=[job.model_dump(mode="json")],
            queue=self.queue,
            eta=eta,
        )
        return result.id


# ---------------------------------------------------------------------------
# Async bodies (one engine per task run; see db.create_task_engine)
# ---------------------------------------------------------------------------

async def _deliver(job: NotificationJob) -> DeliveryOutcome:
    engine = db.create_task_engine()
    try:
        services = build_services(
            async_sessionmaker(engine, expire_on_commit=False), CeleryJobQueue(), settings
        )
        return await services.worker.process(job)
    finally:
        await engine.dispose()


async def _scan() -> Dict:
    engine = db.create_task_engine()
    try:
        services = build_services(
            async_sessionmaker(engine, expire_on_commit=False), CeleryJobQueue(), settings
        )
        summary = await services.scanner.scan_once()
        return {
            "users_seen": summary.users_seen,
            "enqueued": summary.enqueued,
            "errors": summary.errors,
        }
    finally:
        await engine.dispose()


async def _purge() -> int:
    engine = db.create_task_engine()
    try:
        return await db.Ledger(async_sessionmaker(engine, expire_on_commit=False)).purge_dead_letters(
            SystemClock().now()
        )
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

@celery_app.task(
    name=DELIVER_TASK,
    bind=True,
    max_retries=_retry_policy.max_attempts - 1,
    rate_limit=settings.SMS_SEND_RATE_LIMIT,
)
def deliver(self, job_payload: Dict):  # noqa: D401, ANN401
    """Deliver one NotificationJob and return the outcome name."""
    try:
        job = NotificationJob.model_validate(job_payload)
    except pydantic.ValidationError as exc:
        _LOGGER.error("[Worker] dropping malformed job payload %r: %s", job_payload, exc)
        return DeliveryOutcome.DROPPED.value

    try:
        outcome = asyncio.run(_deliver(job))
    except Exception as exc:  # noqa: BLE001
        _LOGGER.exception("[Worker] job %s crashed (retry %d)", job.job_id, self.request.retries)
        raise self.retry(exc=exc, countdown=_retry_policy.delay_for(self.request.retries + 1))
    return outcome.value


@celery_app.task(name="app.workers.notification.scan_due")
def scan_due():  # noqa: D401
    """One scanner tick: enqueue deliver tasks for every due user.

    Per-user failures are isolated inside the scanner; anything raised here
    (database down) fails this tick only and the next beat tick rescans.
    """
    return asyncio.run(_scan())


@celery_app.task(name="app.workers.notification.purge_dead_letters")
def purge_dead_letters():  # noqa: D401
    removed = asyncio.run(_purge())
    if removed:
        _LOGGER.info("[Queue] purged %d expired dead letters", removed)
    return removed
