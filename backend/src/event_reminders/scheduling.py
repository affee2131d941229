"""Time arithmetic for event reminders.

Event start times are stored as a calendar date plus a wall-clock time of day.
They are interpreted in the deployment timezone only when a reminder is
evaluated, so every function here takes the zone and the current instant as
explicit arguments.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import DEFAULT_TIMEZONE

logger = logging.getLogger(__name__)

_TIME_OF_DAY = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?$")


def parse_time_of_day(value: str) -> time:
    match = _TIME_OF_DAY.match(value.strip())
    if match is None:
        raise ValueError(f"time of day must be HH:MM or HH:MM:SS, got {value!r}")
    hours, minutes, seconds = match.groups()
    return time(int(hours), int(minutes), int(seconds or 0))


def resolve_timezone(name: str | None) -> ZoneInfo:
    candidate = (name or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("event_reminder_unknown_timezone: %s, falling back to %s", candidate, DEFAULT_TIMEZONE)
        return ZoneInfo(DEFAULT_TIMEZONE)


def coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def event_start_instant(start_date: date, start_time: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(start_date, start_time, tzinfo=tz).astimezone(timezone.utc)


def compute_target_instant(start_date: date, start_time: time, lead_days: int, tz: ZoneInfo) -> datetime:
    """Return the UTC instant at which a reminder ``lead_days`` ahead is due.

    The days are subtracted on the local calendar, so a DST switch inside the
    lead window moves the absolute instant by the offset change instead of
    keeping an exact multiple of 24 hours.
    """
    if lead_days < 0:
        raise ValueError("lead_days must be >= 0")
    reminder_date = start_date - timedelta(days=lead_days)
    return datetime.combine(reminder_date, start_time, tzinfo=tz).astimezone(timezone.utc)


def is_due(target: datetime, now: datetime, *, poll_interval: timedelta, grace_period: timedelta) -> bool:
    target_utc = coerce_utc(target)
    now_utc = coerce_utc(now)
    window_start = target_utc - (poll_interval + grace_period)
    return window_start < now_utc <= target_utc
