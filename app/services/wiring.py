"""Builds the service graph from settings plus the few runtime-specific pieces
(session factory, queue, gateway, clock). Nothing in ``app/services`` reaches
for a module-level client; this is the only place they get wired together.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.services.delivery import DeliveryWorker
from app.services.idempotency import IdempotencyGuard
from app.services.queue import JobQueue, RetryPolicy
from app.services.scanner import EligibilityScanner
from app.services.schedule import ScheduleConfig
from app.services.trigger import ManualTrigger
from app.types.sms_contract import MessageType
from app.utils.clock import Clock, SystemClock
from app.utils.sms import Gateway, TwilioGateway
from db.ledger import Ledger
from db.users import UserStore


@dataclass
class Services:
    users: UserStore
    ledger: Ledger
    guard: IdempotencyGuard
    scanner: EligibilityScanner
    worker: DeliveryWorker
    trigger: ManualTrigger


def build_services(
    session_maker: async_sessionmaker[AsyncSession],
    queue: JobQueue,
    settings,
    gateway: Gateway | None = None,
    clock: Clock | None = None,
) -> Services:
    clock = clock or SystemClock()
    gateway = gateway or TwilioGateway.from_settings(settings)
    schedule = ScheduleConfig.from_settings(settings)

    users = UserStore(session_maker)
    ledger = Ledger(session_maker)
    guard = IdempotencyGuard(ledger, schedule.default_timezone)

    scanner = EligibilityScanner(users, guard, queue, clock, schedule)
    worker = DeliveryWorker(
        users,
        guard,
        queue,
        gateway,
        clock,
        schedule,
        RetryPolicy.from_settings(settings),
        deep_links={
            MessageType.MORNING_NUDGE: settings.DEEP_LINK_MORNING,
            MessageType.EVENING_REMINDER: settings.DEEP_LINK_EVENING,
        },
        send_timeout=settings.TWILIO_TIMEOUT,
        dead_letter_retention=settings.SMS_FAILED_RETENTION,
        max_defer_seconds=settings.SMS_MAX_DEFER_SECONDS,
    )
    trigger = ManualTrigger(users, guard, queue, clock)
    return Services(users, ledger, guard, scanner, worker, trigger)
