from datetime import date, datetime, timedelta, timezone

import pytest

from shopbook.core.conflicts import (
    Interval,
    TimeOffKind,
    TimeOffRule,
    find_conflict,
    has_conflict,
    overlaps,
    time_off_blocks,
)
from shopbook.core.slots import WorkingHours, block_count, normalize_hours, occupied_labels, slot_starts
from shopbook.core.timezone import format_hhmm, parse_to_instant


def local(text):
    return parse_to_instant(f"2030-03-12T{text}:00")


def test_block_count():
    assert block_count(30, 30) == 1
    assert block_count(31, 30) == 2
    assert block_count(90, 30) == 3
    assert block_count(0, 30) == 1
    with pytest.raises(ValueError):
        block_count(30, 0)


def test_occupied_labels_expand_by_blocks():
    labels = occupied_labels([(local("14:00"), 60), (local("17:00"), 45)], 30)
    assert labels == ["14:00", "14:30", "17:00", "17:30"]


def test_slot_starts_cover_working_hours():
    starts = list(slot_starts(date(2030, 3, 12), WorkingHours(10, 21), 30))
    assert len(starts) == 22
    assert format_hhmm(starts[0]) == "10:00"
    assert format_hhmm(starts[-1]) == "20:30"


def test_normalize_hours_falls_back_on_nonsense():
    assert normalize_hours(None, None, (10, 21)) == WorkingHours(10, 21)
    assert normalize_hours(9, 18, (10, 21)) == WorkingHours(9, 18)
    assert normalize_hours(18, 9, (10, 21)) == WorkingHours(10, 21)


def test_half_open_intervals():
    assert overlaps(1, 3, 2, 4)
    assert not overlaps(1, 2, 2, 3)
    assert not overlaps(2, 3, 1, 2)
    assert overlaps(1, 5, 2, 3)


def test_back_to_back_bookings_do_not_conflict():
    existing = [Interval(local("10:00"), local("10:30"), ref=1)]
    assert not has_conflict(1, local("10:30"), local("11:00"), existing, [])
    assert not has_conflict(1, local("09:30"), local("10:00"), existing, [])
    assert has_conflict(1, local("10:15"), local("10:45"), existing, [])


def test_longer_booking_blocks_later_grid_point():
    existing = [Interval(local("14:00"), local("15:00"), ref=7)]
    hit = find_conflict(local("14:30"), local("15:00"), existing, [])
    assert hit is not None
    assert hit.ref == 7


def test_absolute_time_off():
    rule = TimeOffRule(
        kind=TimeOffKind.ABSOLUTE_PARTIAL_DAY,
        start=local("12:00"),
        end=local("13:00"),
        ref=3,
    )
    assert time_off_blocks(local("12:30"), local("13:30"), rule)
    assert not time_off_blocks(local("13:00"), local("13:30"), rule)
    assert find_conflict(local("11:45"), local("12:15"), [], [rule]) is rule


def test_disabled_time_off_is_ignored():
    rule = TimeOffRule(
        kind=TimeOffKind.ABSOLUTE_RANGE,
        start=local("10:00"),
        end=local("20:00"),
        enabled=False,
    )
    assert not time_off_blocks(local("12:00"), local("12:30"), rule)


def test_daily_recurring_time_off_uses_minute_of_day():
    lunch = TimeOffRule(kind=TimeOffKind.DAILY_RECURRING, start_minute=12 * 60, end_minute=13 * 60)
    other_day = parse_to_instant("2031-07-01T12:15:00")
    assert time_off_blocks(other_day, other_day + timedelta(minutes=30), lunch)
    assert not time_off_blocks(local("13:00"), local("13:30"), lunch)


def test_daily_time_off_catches_candidates_past_midnight():
    early = TimeOffRule(kind=TimeOffKind.DAILY_RECURRING, start_minute=0, end_minute=60)
    start = local("23:30")
    assert time_off_blocks(start, start + timedelta(minutes=60), early)


def test_naive_utc_and_aware_inputs_compare_equally():
    aware = datetime(2030, 3, 12, 6, 0, tzinfo=timezone.utc)
    naive = datetime(2030, 3, 12, 6, 0)
    existing = [Interval(naive, naive + timedelta(minutes=30))]
    assert has_conflict(1, aware, aware + timedelta(minutes=30), existing, [])
