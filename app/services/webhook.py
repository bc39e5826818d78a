"""Inbound Twilio webhook: compliance keywords and delivery-status callbacks.

Order per request: rate limit, signature, parse, act. A request that fails
the first two steps never reaches the database.
"""

from __future__ import annotations

import logging
from enum import Enum

import pydantic

from app.services.errors import RateLimited, SignatureInvalid, ValidationError
from app.types.sms_contract import SendStatus, TwilioWebhook, WebhookAck
from app.utils import metrics
from app.utils.clock import Clock
from app.utils.rate_limit import SlidingWindowLimiter
from app.utils.sms import Gateway, format_phone_number, mask_phone, parse_form
from db.ledger import Ledger
from db.users import UserStore

_LOGGER = logging.getLogger(__name__)


class Keyword(str, Enum):
    STOP = "STOP"
    START = "START"
    HELP = "HELP"


# CTIA opt-out / opt-in / help families.
_KEYWORDS = (
    (Keyword.STOP, frozenset({"STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"})),
    (Keyword.START, frozenset({"START", "UNSTOP", "SUBSCRIBE", "RESUME", "YES"})),
    (Keyword.HELP, frozenset({"HELP", "INFO"})),
)

# Twilio MessageStatus -> ledger status. Anything else (read, canceled, ...) is ignored.
PROVIDER_STATUS_MAP = {
    "accepted": SendStatus.QUEUED,
    "scheduled": SendStatus.QUEUED,
    "queued": SendStatus.QUEUED,
    "sending": SendStatus.QUEUED,
    "sent": SendStatus.SENT,
    "delivered": SendStatus.DELIVERED,
    "undelivered": SendStatus.FAILED,
    "failed": SendStatus.FAILED,
}

# TwiML confirmations for keyword messages. Any other ack gets an empty <Response/>.
KEYWORD_REPLIES: dict[str, str] = {
    "OPTED_OUT": "You have successfully opted out of SMS notifications. Reply START to opt back in.",
    "OPTED_IN": "You have successfully opted back into SMS notifications. Reply STOP to opt out.",
    "HELP": "GTSD SMS Notifications. Reply STOP to opt out, START to opt in. For support, visit our website.",
    "UNKNOWN_NUMBER": "Phone number not found in our system. If you need help, please contact support.",
}


def reply_for(ack: WebhookAck) -> str | None:
    return KEYWORD_REPLIES.get(ack)


def classify_keyword(text: str) -> Keyword | None:
    """Match the whole message (trimmed, upper-cased, trailing punctuation dropped).

    "stop!" is an opt-out; "don't stop" is not.
    """
    head = text.strip().upper().rstrip(".!?,").strip()
    if not head:
        return None
    for keyword, family in _KEYWORDS:
        if head in family:
            return keyword
    return None


class WebhookHandler:
    def __init__(
        self,
        users: UserStore,
        ledger: Ledger,
        gateway: Gateway,
        limiter: SlidingWindowLimiter,
        clock: Clock,
    ):
        self.users = users
        self.ledger = ledger
        self.gateway = gateway
        self.limiter = limiter
        self.clock = clock

    async def handle(
        self,
        raw_body: bytes,
        signature: str | None,
        url: str,
        source: str,
    ) -> WebhookAck:
        """Process one webhook request.

        *url* is the public URL Twilio posted to (part of the signed string);
        *source* is the client address used for rate limiting.
        """
        now = self.clock.now()
        identities = [f"src:{source}"]
        if signature:
            identities.append(f"sig:{signature}")
        for identity in identities:
            if not await self.limiter.hit(identity, now):
                raise RateLimited(identity, self.limiter.limit)

        if not self.gateway.verify_signature(raw_body, signature, url):
            raise SignatureInvalid("invalid or missing twilio signature")

        try:
            event = TwilioWebhook.model_validate(parse_form(raw_body))
        except (pydantic.ValidationError, UnicodeDecodeError) as exc:
            raise ValidationError(f"malformed webhook payload: {exc}")

        if event.is_status_callback:
            return await self._status(event)
        return await self._inbound(event)

    async def _inbound(self, event: TwilioWebhook) -> WebhookAck:
        phone = format_phone_number(event.from_)
        if not phone:
            _LOGGER.warning("[Webhook] inbound message without usable sender: %r", event.from_)
            return "IGNORED"

        keyword = classify_keyword(event.body)
        if keyword is None:
            _LOGGER.info("[Webhook] non-keyword message from %s", mask_phone(phone))
            return "IGNORED"
        if keyword is Keyword.HELP:
            return "HELP"

        opt_in = keyword is Keyword.START
        touched = await self.users.set_opt_in_by_phone(phone, opt_in)
        if not touched:
            _LOGGER.warning("[Webhook] %s from unknown number %s", keyword.value, mask_phone(phone))
            return "UNKNOWN_NUMBER"
        _LOGGER.info("[Webhook] %s from %s applied to users %s", keyword.value, mask_phone(phone), touched)
        if opt_in:
            return "OPTED_IN"
        metrics.SMS_OPT_OUT.inc()
        return "OPTED_OUT"

    async def _status(self, event: TwilioWebhook) -> WebhookAck:
        provider_status = (event.message_status or "").lower()
        status = PROVIDER_STATUS_MAP.get(provider_status)
        if status is None:
            _LOGGER.info("[Webhook] unmapped provider status %r for %s", provider_status, event.message_sid)
            return "STATUS_IGNORED"

        changed = await self.ledger.apply_provider_status(
            event.message_sid, status, self.clock.now(), detail=event.error_detail()
        )
        _LOGGER.info("[Webhook] status %s for %s (changed=%s)", status.value, event.message_sid, changed)
        return "STATUS_UPDATED" if changed else "STATUS_IGNORED"
