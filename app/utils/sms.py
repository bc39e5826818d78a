"""Twilio gateway wrapper plus E.164 helpers.

``TwilioGateway`` is the only place that talks to the Twilio SDK. It turns SDK
and transport exceptions into the service's transient/terminal taxonomy and
verifies inbound webhook signatures (``X-Twilio-Signature``: HMAC-SHA1 of the
public URL plus the sorted form fields, keyed by the auth token).
"""

from __future__ import annotations

import logging
import re
from typing import Protocol
from urllib.parse import parse_qsl
from uuid import uuid4

import requests
from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.request_validator import RequestValidator
from twilio.rest import Client as TwilioClient

from app.services.errors import TerminalGatewayError, TransientGatewayError
from app.types.sms_contract import GatewayResult

_LOGGER = logging.getLogger(__name__)

_E164 = re.compile(r"^\+[1-9]\d{1,14}$")


def format_phone_number(phone: str | None) -> str | None:
    """Best-effort E.164 normalisation; ``None`` when the input is unusable."""
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    if phone.strip().startswith("+"):
        return f"+{digits}"
    return None


def is_valid_phone_number(phone: str | None) -> bool:
    """Strict: the value must already be E.164. Inbound STOPs are matched on it."""
    return bool(phone and _E164.match(phone))


def mask_phone(phone: str | None) -> str:
    """+15551234567 -> +1555***4567"""
    if not phone or len(phone) < 8:
        return "***"
    return f"{phone[:-7]}***{phone[-4:]}"


def parse_form(raw_body: bytes) -> dict[str, str]:
    """Flatten a form-encoded webhook body: ``MessageSid=SM1`` -> ``{"MessageSid": "SM1"}``."""
    return dict(parse_qsl(raw_body.decode("utf-8"), keep_blank_values=True))


class Gateway(Protocol):
    def send(self, phone: str, body: str) -> GatewayResult: ...

    def verify_signature(self, raw_body: bytes, signature: str | None, url: str) -> bool: ...


def _is_transient_status(http_status: int | None) -> bool:
    return http_status is None or http_status == 429 or http_status >= 500


class TwilioGateway:
    def __init__(
        self,
        account_sid: str | None,
        auth_token: str | None,
        from_number: str | None = None,
        messaging_service_sid: str | None = None,
        status_callback_url: str | None = None,
        timeout: float = 5.0,
    ):
        self.from_number = from_number
        self.messaging_service_sid = messaging_service_sid
        self.status_callback_url = status_callback_url
        self.timeout = timeout
        self._validator = RequestValidator(auth_token) if auth_token else None
        self._client = None
        if account_sid and auth_token and (from_number or messaging_service_sid):
            self._client = TwilioClient(
                account_sid, auth_token, http_client=TwilioHttpClient(timeout=timeout)
            )

    @classmethod
    def from_settings(cls, settings) -> "TwilioGateway":
        return cls(
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            from_number=settings.TWILIO_FROM_NUMBER,
            messaging_service_sid=settings.TWILIO_MESSAGING_SERVICE_SID,
            status_callback_url=settings.WEBHOOK_PUBLIC_URL,
            timeout=settings.TWILIO_TIMEOUT,
        )

    def send(self, phone: str, body: str) -> GatewayResult:
        if self._client is None:
            _LOGGER.warning("[SMS] DEV mode: would send to %s: %s", mask_phone(phone), body)
            return GatewayResult(provider_message_id=f"dev-{uuid4()}", status="queued")

        # Twilio prefers the messaging service when both senders are configured.
        params = {"to": phone, "body": body}
        if self.messaging_service_sid:
            params["messaging_service_sid"] = self.messaging_service_sid
        else:
            params["from_"] = self.from_number
        if self.status_callback_url:
            params["status_callback"] = self.status_callback_url

        try:
            message = self._client.messages.create(**params)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
            raise TransientGatewayError(f"connection error: {exc}")
        except TwilioRestException as exc:
            code = str(exc.code) if exc.code is not None else None
            if _is_transient_status(exc.status):
                raise TransientGatewayError(exc.msg, code=code, http_status=exc.status)
            raise TerminalGatewayError(exc.msg, code=code, http_status=exc.status)

        status = message.status or "queued"
        _LOGGER.info("[SMS] sent sid=%s to=%s status=%s", message.sid, mask_phone(phone), status)
        return GatewayResult(provider_message_id=message.sid, status=status)

    def verify_signature(self, raw_body: bytes, signature: str | None, url: str) -> bool:
        if self._validator is None:
            _LOGGER.error("[SMS] TWILIO_AUTH_TOKEN not configured; rejecting webhook")
            return False
        if not signature:
            return False
        try:
            params = parse_form(raw_body)
        except UnicodeDecodeError:
            return False
        return self._validator.validate(url, params, signature)
