"""Manual trigger for operational testing.

``force`` lets the job through quiet hours; ``bypass_guard`` skips the
once-per-day ledger check and records the send outside the daily key. Without
``bypass_guard`` a user who already got today's message gets nothing.
"""

from __future__ import annotations

import logging

from app.services.errors import ValidationError
from app.services.idempotency import IdempotencyGuard
from app.services.queue import JobQueue
from app.types.sms_contract import MessageType, NotificationJob
from app.utils.clock import Clock
from db.users import UserStore

_LOGGER = logging.getLogger(__name__)


class ManualTrigger:
    def __init__(self, users: UserStore, guard: IdempotencyGuard, queue: JobQueue, clock: Clock):
        self.users = users
        self.guard = guard
        self.queue = queue
        self.clock = clock

    async def trigger(
        self,
        user_id: int,
        message_type: MessageType,
        force: bool = False,
        bypass_guard: bool = False,
    ) -> str | None:
        """Enqueue one job; returns the queue id, or ``None`` if today's slot is taken."""
        now = self.clock.now()
        user = await self.users.get(user_id)
        if user is None:
            raise ValidationError(f"user {user_id} not found")

        if not bypass_guard and await self.guard.already_sent(user, message_type, now):
            _LOGGER.info(
                "[Trigger] %s already recorded today for user %s; nothing queued", message_type.value, user_id
            )
            return None

        job = NotificationJob(
            user_id=user_id,
            message_type=message_type,
            enqueued_at=now,
            force=force,
            bypass_guard=bypass_guard,
            local_day=self.guard.day_for(user, now),
        )
        queue_id = self.queue.enqueue(job)
        _LOGGER.info(
            "[Trigger] queued %s for user %s (force=%s bypass_guard=%s job=%s)",
            message_type.value, user_id, force, bypass_guard, job.job_id,
        )
        return queue_id
