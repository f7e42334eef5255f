"""
Interval conflict checks for one staff member's timeline.

Intervals are half-open ``[start, end)``: a booking ending at 10:30 and one
starting at 10:30 do not collide. The same predicate is used for bookings and
for absolute time-off; daily recurring time-off is compared on minute of day.
"""

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta

from .timezone import minute_of_day, to_utc

MINUTES_PER_DAY = 24 * 60


class TimeOffKind(str, enum.Enum):
    DAILY_RECURRING = "DAILY_RECURRING"
    ABSOLUTE_RANGE = "ABSOLUTE_RANGE"
    ABSOLUTE_PARTIAL_DAY = "ABSOLUTE_PARTIAL_DAY"


@dataclass(frozen=True)
class Interval:
    start: datetime
    end: datetime
    ref: object = None


@dataclass(frozen=True)
class TimeOffRule:
    kind: TimeOffKind
    start: datetime | None = None
    end: datetime | None = None
    start_minute: int | None = None
    end_minute: int | None = None
    enabled: bool = True
    ref: object = None


def overlaps(a_start, a_end, b_start, b_end) -> bool:
    return a_start < b_end and a_end > b_start


def _daily_overlaps(start: datetime, end: datetime, rule: TimeOffRule) -> bool:
    if rule.start_minute is None or rule.end_minute is None:
        return False
    cand_start = minute_of_day(start)
    cand_end = cand_start + int((to_utc(end) - to_utc(start)) / timedelta(minutes=1))
    # a candidate running past midnight also meets the next day's window
    for shift in (0, MINUTES_PER_DAY):
        if overlaps(cand_start, cand_end, rule.start_minute + shift, rule.end_minute + shift):
            return True
    return False


def time_off_blocks(start: datetime, end: datetime, rule: TimeOffRule) -> bool:
    if not rule.enabled:
        return False
    if rule.kind == TimeOffKind.DAILY_RECURRING:
        return _daily_overlaps(start, end, rule)
    if rule.start is None or rule.end is None:
        return False
    return overlaps(to_utc(start), to_utc(end), to_utc(rule.start), to_utc(rule.end))


def find_conflict(
    candidate_start: datetime,
    candidate_end: datetime,
    existing_bookings,
    time_off_windows,
):
    """First booking interval or time-off rule colliding with the candidate, else None."""
    start, end = to_utc(candidate_start), to_utc(candidate_end)
    for booking in existing_bookings:
        if overlaps(start, end, to_utc(booking.start), to_utc(booking.end)):
            return booking
    for rule in time_off_windows:
        if time_off_blocks(start, end, rule):
            return rule
    return None


def has_conflict(
    staff_id: int,
    candidate_start: datetime,
    candidate_end: datetime,
    existing_bookings,
    time_off_windows,
) -> bool:
    """
    ``existing_bookings`` must already be limited to occupying bookings of
    ``staff_id`` around the candidate's business day.
    """
    return (
        find_conflict(candidate_start, candidate_end, existing_bookings, time_off_windows)
        is not None
    )
