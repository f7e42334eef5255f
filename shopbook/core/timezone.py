"""
Business-timezone helpers.

Every wall-clock value the shop deals with (opening hours, "today", the day a
booking belongs to) is interpreted in one configured IANA zone, never in the
host's local time. Instants leave this module as timezone-aware UTC datetimes.
"""

import re
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import settings
from ..errors import InvalidTimeFormat

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")


@lru_cache(maxsize=8)
def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise RuntimeError(f"Unknown business timezone: {name}") from exc


def business_zone() -> ZoneInfo:
    return _zone(settings.BUSINESS_TIMEZONE)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_naive() -> datetime:
    return utc_now().replace(tzinfo=None)


def to_utc(value: datetime) -> datetime:
    """Aware UTC from an aware datetime or a naive UTC datetime (as stored)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_utc_naive(value: datetime) -> datetime:
    return to_utc(value).replace(tzinfo=None)


def _localize(wall: datetime) -> datetime:
    # fold=0: skipped wall times resolve forward, repeated ones to the first occurrence
    return wall.replace(tzinfo=business_zone(), fold=0)


def parse_to_instant(raw) -> datetime:
    """
    Parse a client-supplied time into an aware UTC instant.

    Accepts ISO-8601 strings with or without an offset (a space may separate
    date and time), bare ``YYYY-MM-DD`` dates (start of that business day),
    epoch milliseconds and ``datetime`` objects. Values without an offset are
    business-local wall-clock times.
    """
    if isinstance(raw, bool):
        raise InvalidTimeFormat("Boolean is not a valid time")

    if isinstance(raw, datetime):
        if raw.tzinfo is None:
            return to_utc(_localize(raw))
        return to_utc(raw)

    if isinstance(raw, date):
        return to_utc(_localize(datetime.combine(raw, time.min)))

    if isinstance(raw, (int, float)):
        try:
            return datetime.fromtimestamp(float(raw) / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise InvalidTimeFormat(f"Epoch milliseconds out of range: {raw}") from exc

    if not isinstance(raw, str):
        raise InvalidTimeFormat(f"Unsupported time value: {raw!r}")

    text = raw.strip()
    if not text:
        raise InvalidTimeFormat("Empty time value")

    if _DATE_ONLY.match(text):
        try:
            return to_utc(_localize(datetime.combine(date.fromisoformat(text), time.min)))
        except ValueError as exc:
            raise InvalidTimeFormat(f"Invalid date: {text}") from exc

    normalized = text if "T" in text else text.replace(" ", "T", 1)
    if normalized[-1:] in {"z", "Z"}:
        normalized = normalized[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise InvalidTimeFormat(f"Invalid time format: {text}") from exc

    if parsed.tzinfo is not None:
        return to_utc(parsed)
    return to_utc(_localize(parsed.replace(tzinfo=None)))


def parse_business_date(raw: str | date) -> date:
    if isinstance(raw, datetime):
        return to_business(raw).date()
    if isinstance(raw, date):
        return raw
    text = str(raw or "").strip()
    if not _DATE_ONLY.match(text):
        raise InvalidTimeFormat(f"Date must be YYYY-MM-DD: {raw!r}")
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise InvalidTimeFormat(f"Invalid date: {text}") from exc


def parse_hhmm(raw: str) -> int:
    """``"HH:MM"`` -> minute of day."""
    match = _HHMM.match(str(raw or "").strip())
    if not match:
        raise InvalidTimeFormat(f"Time must be HH:MM: {raw!r}")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise InvalidTimeFormat(f"Time out of range: {raw!r}")
    return hours * 60 + minutes


def to_business(instant: datetime) -> datetime:
    return to_utc(instant).astimezone(business_zone())


def business_day_string(instant: datetime) -> str:
    return to_business(instant).date().isoformat()


def business_days_spanned(start: datetime, end: datetime) -> list[str]:
    """Business days ("YYYY-MM-DD") touched by the half-open interval [start, end)."""
    first = to_business(start).date()
    last = to_business(max(start, end - timedelta(microseconds=1))).date()
    days = []
    current = first
    while current <= last:
        days.append(current.isoformat())
        current += timedelta(days=1)
    return days


def business_today(now: datetime | None = None) -> date:
    return to_business(now or utc_now()).date()


def business_wall_clock(day: date, minute_of_day: int) -> datetime:
    """UTC instant of a business-local ``day`` at ``minute_of_day`` (may exceed 24h)."""
    wall = datetime.combine(day, time.min) + timedelta(minutes=int(minute_of_day))
    return to_utc(_localize(wall))


def business_day_bounds(day: str | date) -> tuple[datetime, datetime]:
    """[start, end) of a business day as aware UTC instants."""
    parsed = parse_business_date(day)
    start = to_utc(_localize(datetime.combine(parsed, time.min)))
    end = to_utc(_localize(datetime.combine(parsed + timedelta(days=1), time.min)))
    return start, end


def business_week_bounds(day: str | date) -> tuple[datetime, datetime]:
    """[Monday 00:00, next Monday 00:00) containing ``day``."""
    parsed = parse_business_date(day)
    monday = parsed - timedelta(days=parsed.weekday())
    start, _ = business_day_bounds(monday)
    end, _ = business_day_bounds(monday + timedelta(days=7))
    return start, end


def business_month_bounds(day: str | date) -> tuple[datetime, datetime]:
    parsed = parse_business_date(day)
    first = parsed.replace(day=1)
    if first.month == 12:
        next_first = first.replace(year=first.year + 1, month=1)
    else:
        next_first = first.replace(month=first.month + 1)
    start, _ = business_day_bounds(first)
    end, _ = business_day_bounds(next_first)
    return start, end


def add_business_days(day: str | date, days: int) -> str:
    return (parse_business_date(day) + timedelta(days=int(days))).isoformat()


def minute_of_day(instant: datetime) -> int:
    local = to_business(instant)
    return local.hour * 60 + local.minute


def format_hhmm(instant: datetime) -> str:
    return to_business(instant).strftime("%H:%M")
