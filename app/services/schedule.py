"""User-local time helpers.

Everything here takes an aware UTC instant plus a ``ZoneInfo`` and answers
questions in the user's wall-clock time. Offsets always come from the tz
database (``zoneinfo``), never from a fixed UTC offset, so DST transition days
behave.

Calendar-day and epoch-second keys are derived by truncation. Rounding a
23:59:59.6 timestamp up would move it into the next day.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.services.errors import ValidationError
from app.types.sms_contract import MessageType

UTC = timezone.utc


def parse_hhmm(value: str) -> time:
    try:
        hour, minute = value.strip().split(":")
        return time(int(hour), int(minute))
    except ValueError:
        raise ValidationError(f"expected HH:MM, got '{value}'")


def resolve_zone(tz_name: str | None, default: str) -> ZoneInfo:
    name = tz_name or default
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"timezone '{name}' is not a valid IANA timezone")


def _require_aware(instant: datetime) -> None:
    if instant.tzinfo is None:
        raise ValueError("instant must be timezone-aware")


def local_now(instant: datetime, zone: ZoneInfo) -> datetime:
    _require_aware(instant)
    return instant.astimezone(zone)


def local_day(instant: datetime, zone: ZoneInfo) -> date:
    """The user's calendar date at *instant* (floor of local wall time)."""
    return local_now(instant, zone).date()


def epoch_seconds(instant: datetime) -> int:
    _require_aware(instant)
    return math.floor(instant.timestamp())


def local_day_bounds(day: date, zone: ZoneInfo) -> tuple[datetime, datetime]:
    """UTC ``[start, end)`` of a local calendar day. 23 or 25 hours on DST days."""
    start = datetime.combine(day, time.min, tzinfo=zone)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    return start.astimezone(UTC), end.astimezone(UTC)


def is_due(instant: datetime, zone: ZoneInfo, target: time) -> bool:
    """True once local wall time has reached *target* today.

    A ``>=`` comparison rather than equality, so a late or skipped tick still
    picks the user up on the next run.
    """
    wall = local_now(instant, zone)
    return (wall.hour, wall.minute) >= (target.hour, target.minute)


def is_quiet_hours(instant: datetime, zone: ZoneInfo, start_hour: int, end_hour: int) -> bool:
    hour = local_now(instant, zone).hour
    if start_hour > end_hour:  # window wraps midnight
        return hour >= start_hour or hour < end_hour
    return start_hour <= hour < end_hour


def next_window_start(instant: datetime, zone: ZoneInfo, end_hour: int) -> datetime:
    """Next local ``end_hour:00`` strictly after *instant*, as a UTC datetime."""
    wall = local_now(instant, zone)
    candidate_day = wall.date()
    if wall.hour >= end_hour:
        candidate_day += timedelta(days=1)
    candidate = datetime.combine(candidate_day, time(end_hour), tzinfo=zone)
    return candidate.astimezone(UTC)


def target_for(message_type: MessageType, morning: time, evening: time) -> time:
    if message_type is MessageType.MORNING_NUDGE:
        return morning
    return evening


@dataclass(frozen=True)
class ScheduleConfig:
    morning_at: time = time(6, 15)
    evening_at: time = time(21, 0)
    quiet_start_hour: int = 22
    quiet_end_hour: int = 6
    default_timezone: str = "America/Los_Angeles"
    max_daily_failures: int = 1

    @classmethod
    def from_settings(cls, settings) -> "ScheduleConfig":
        return cls(
            morning_at=parse_hhmm(settings.SMS_MORNING_NUDGE_AT),
            evening_at=parse_hhmm(settings.SMS_EVENING_REMINDER_AT),
            quiet_start_hour=settings.SMS_QUIET_HOURS_START,
            quiet_end_hour=settings.SMS_QUIET_HOURS_END,
            default_timezone=settings.DEFAULT_TIMEZONE,
            max_daily_failures=settings.SMS_MAX_DAILY_FAILURES,
        )

    def target(self, message_type: MessageType) -> time:
        return target_for(message_type, self.morning_at, self.evening_at)
