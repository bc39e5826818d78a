"""Pydantic models that define the contract between the scanner, the job
queue, the delivery worker and the webhook.

These classes are intentionally framework-agnostic so they can be reused by
workers, API responses, and tests without pulling in Celery or database
layers.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


class MessageType(str, Enum):
    MORNING_NUDGE = "morning_nudge"
    EVENING_REMINDER = "evening_reminder"


class SendStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


# Statuses that count as "already sent today" for the idempotency guard.
ACTIVE_STATUSES = (SendStatus.QUEUED.value, SendStatus.SENT.value, SendStatus.DELIVERED.value)


class DeliveryOutcome(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"
    DROPPED = "dropped"
    DEFERRED = "deferred"
    RETRY_SCHEDULED = "retry_scheduled"
    EXPIRED = "expired"
    FAILED = "failed"


# ──────────────────────────────
# Queue payload
# ──────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class NotificationJob(BaseModel):
    """A single unit of work on the SMS queue."""

    job_id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: int
    message_type: MessageType
    enqueued_at: datetime = Field(default_factory=_utcnow)
    attempt: int = 1
    force: bool = False  # bypass quiet hours (manual trigger only)
    bypass_guard: bool = False  # skip the once-per-day ledger check
    local_day: Optional[date] = None  # user-local day the job was scheduled for

    @field_validator("enqueued_at")
    def _require_aware(cls, v: datetime):  # noqa: N805
        if v.tzinfo is None:
            raise ValueError("enqueued_at must be timezone-aware")
        return v

    @field_validator("attempt")
    def _positive_attempt(cls, v: int):  # noqa: N805
        if v < 1:
            raise ValueError("attempt is 1-based")
        return v

    def next_attempt(self, now: datetime) -> "NotificationJob":
        return self.model_copy(update={"attempt": self.attempt + 1, "enqueued_at": now})


class UserSnapshot(BaseModel):
    """The slice of a user row this service reads."""

    id: int
    name: Optional[str] = None
    phone: Optional[str] = None
    timezone: Optional[str] = None
    sms_opt_in: bool = False
    is_active: bool = False

    @property
    def first_name(self) -> Optional[str]:
        if not self.name or not self.name.strip():
            return None
        return self.name.strip().split(" ")[0]


class GatewayResult(BaseModel):
    provider_message_id: str
    status: str


# ──────────────────────────────
# Twilio webhook form
# ──────────────────────────────


class TwilioWebhook(BaseModel):
    """Form fields Twilio posts for inbound messages and status callbacks.

    Inbound messages carry ``Body`` and ``SmsStatus=received``; status
    callbacks carry ``MessageStatus`` (and ``ErrorCode`` on failure).
    """

    message_sid: str = Field(alias="MessageSid")
    account_sid: Optional[str] = Field(default=None, alias="AccountSid")
    from_: Optional[str] = Field(default=None, alias="From")
    to: Optional[str] = Field(default=None, alias="To")
    body: str = Field(default="", alias="Body")
    sms_status: Optional[str] = Field(default=None, alias="SmsStatus")
    message_status: Optional[str] = Field(default=None, alias="MessageStatus")
    error_code: Optional[str] = Field(default=None, alias="ErrorCode")
    error_message: Optional[str] = Field(default=None, alias="ErrorMessage")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @property
    def is_status_callback(self) -> bool:
        return bool(self.message_status)

    def error_detail(self) -> Optional[str]:
        if not self.error_code:
            return None
        return f"{self.error_code}: {self.error_message or ''}".strip()


WebhookAck = Literal[
    "OPTED_OUT",
    "OPTED_IN",
    "HELP",
    "IGNORED",
    "UNKNOWN_NUMBER",
    "STATUS_UPDATED",
    "STATUS_IGNORED",
]
