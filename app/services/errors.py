"""Error taxonomy for the SMS nudge pipeline."""

from __future__ import annotations


class NotificationError(Exception):
    """Base class for every error raised by the nudge pipeline."""


class ValidationError(NotificationError):
    """Malformed input (e.g. a phone number that is not E.164). Never retried."""


class GatewayError(NotificationError):
    def __init__(self, message: str, code: str | None = None, http_status: int | None = None):
        super().__init__(message)
        self.code = code
        self.http_status = http_status

    def detail(self) -> str:
        parts = [str(self)]
        if self.http_status is not None:
            parts.append(f"http_status={self.http_status}")
        if self.code:
            parts.append(f"code={self.code}")
        return " ".join(parts)


class TransientGatewayError(GatewayError):
    """Timeout, connection failure, 429 or 5xx. Retried with backoff."""


class TerminalGatewayError(GatewayError):
    """The number can never be delivered to. Failed immediately, no retry."""


class IdempotencyNoOp(NotificationError):
    """A qualifying SendRecord already exists for today. Not a failure."""


class SignatureInvalid(NotificationError):
    """Webhook signature missing or wrong."""


class RateLimited(NotificationError):
    def __init__(self, identity: str, limit: int):
        super().__init__(f"rate limit of {limit}/min exceeded for {identity}")
        self.identity = identity
        self.limit = limit
