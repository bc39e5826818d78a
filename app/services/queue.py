"""Queue seam between the scanner/trigger (producers) and the delivery worker."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from app.types.sms_contract import NotificationJob


class JobQueue(Protocol):
    def enqueue(self, job: NotificationJob, eta: datetime | None = None) -> str:
        """Hand *job* to the queue, optionally not before *eta*. Returns a queue id."""
        ...


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: 60 s after the first failure, 120 s after the second."""

    max_attempts: int = 3
    base_delay: int = 60
    multiplier: int = 2

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.SMS_MAX_ATTEMPTS,
            base_delay=settings.SMS_RETRY_BASE_DELAY,
            multiplier=settings.SMS_RETRY_MULTIPLIER,
        )

    def delay_for(self, failed_attempt: int) -> int:
        """Seconds to wait before the attempt after *failed_attempt* (1-based)."""
        return self.base_delay * self.multiplier ** (failed_attempt - 1)

    def exhausted(self, failed_attempt: int) -> bool:
        return failed_attempt >= self.max_attempts
