from datetime import date, datetime, timezone

import pytest

from shopbook.config import settings
from shopbook.core.timezone import (
    business_day_bounds,
    business_day_string,
    business_days_spanned,
    business_month_bounds,
    business_week_bounds,
    business_wall_clock,
    format_hhmm,
    parse_business_date,
    parse_hhmm,
    parse_to_instant,
)
from shopbook.errors import InvalidTimeFormat


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_naive_string_is_business_local():
    # Asia/Shanghai is UTC+8 all year
    assert parse_to_instant("2030-03-12T14:00:00") == utc(2030, 3, 12, 6, 0)
    assert parse_to_instant("2030-03-12 14:00") == utc(2030, 3, 12, 6, 0)


def test_explicit_offsets_are_respected():
    assert parse_to_instant("2030-03-12T14:00:00Z") == utc(2030, 3, 12, 14, 0)
    assert parse_to_instant("2030-03-12T14:00:00+02:00") == utc(2030, 3, 12, 12, 0)
    assert parse_to_instant("2030-03-12T14:00:00z") == utc(2030, 3, 12, 14, 0)
    assert parse_to_instant("2030-03-12T14:00:00+05") == utc(2030, 3, 12, 9, 0)
    assert parse_to_instant("2030-03-12T14:00:00-0330") == utc(2030, 3, 12, 17, 30)


def test_date_only_is_start_of_business_day():
    assert parse_to_instant("2030-03-12") == utc(2030, 3, 11, 16, 0)
    assert parse_to_instant(date(2030, 3, 12)) == utc(2030, 3, 11, 16, 0)


def test_epoch_milliseconds():
    instant = utc(2030, 3, 12, 6, 0)
    millis = int(instant.timestamp() * 1000)
    assert parse_to_instant(millis) == instant


def test_datetime_objects():
    assert parse_to_instant(datetime(2030, 3, 12, 14, 0)) == utc(2030, 3, 12, 6, 0)
    assert parse_to_instant(utc(2030, 3, 12, 6, 0)) == utc(2030, 3, 12, 6, 0)


@pytest.mark.parametrize("raw", ["", "   ", "not-a-date", "2030-13-40", "2030-02-30", "12:00", True, None, [1]])
def test_malformed_values_are_rejected(raw):
    with pytest.raises(InvalidTimeFormat):
        parse_to_instant(raw)


def test_dst_gap_resolves_forward_and_overlap_to_first_occurrence():
    previous = settings.BUSINESS_TIMEZONE
    try:
        settings.BUSINESS_TIMEZONE = "Europe/Warsaw"
        # 2030-03-31 02:30 does not exist in Warsaw (clocks jump 02:00 -> 03:00)
        skipped = parse_to_instant("2030-03-31T02:30:00")
        assert skipped == utc(2030, 3, 31, 1, 30)
        assert format_hhmm(skipped) == "03:30"

        # 2030-10-27 02:30 happens twice; the first (summer time) wins
        repeated = parse_to_instant("2030-10-27T02:30:00")
        assert repeated == utc(2030, 10, 27, 0, 30)
    finally:
        settings.BUSINESS_TIMEZONE = previous


def test_business_day_is_not_utc_day():
    late_utc = utc(2030, 3, 12, 17, 0)
    assert business_day_string(late_utc) == "2030-03-13"


def test_day_week_month_bounds():
    start, end = business_day_bounds("2030-03-12")
    assert start == utc(2030, 3, 11, 16, 0)
    assert end == utc(2030, 3, 12, 16, 0)

    # 2030-03-12 is a Tuesday
    week_start, week_end = business_week_bounds("2030-03-12")
    assert week_start == utc(2030, 3, 10, 16, 0)
    assert week_end == utc(2030, 3, 17, 16, 0)

    month_start, month_end = business_month_bounds("2030-12-05")
    assert month_start == utc(2030, 11, 30, 16, 0)
    assert month_end == utc(2030, 12, 31, 16, 0)


def test_wall_clock_and_hhmm():
    assert parse_hhmm("09:30") == 570
    assert business_wall_clock(date(2030, 3, 12), 570) == utc(2030, 3, 12, 1, 30)
    with pytest.raises(InvalidTimeFormat):
        parse_hhmm("24:00")
    with pytest.raises(InvalidTimeFormat):
        parse_business_date("12/03/2030")


def test_days_spanned_by_an_interval():
    # 23:30-00:30 local touches two business days, 23:30-00:00 only one
    assert business_days_spanned(utc(2030, 3, 12, 15, 30), utc(2030, 3, 12, 16, 30)) == [
        "2030-03-12",
        "2030-03-13",
    ]
    assert business_days_spanned(utc(2030, 3, 12, 15, 30), utc(2030, 3, 12, 16, 0)) == ["2030-03-12"]
    assert business_days_spanned(utc(2030, 3, 12, 6, 0), utc(2030, 3, 12, 6, 0)) == ["2030-03-12"]
