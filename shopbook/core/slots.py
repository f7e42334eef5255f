from dataclasses import dataclass
from datetime import date, datetime, timedelta

from .timezone import business_wall_clock, format_hhmm


def block_count(duration_minutes: int, block_size: int) -> int:
    """Number of grid blocks a duration occupies (ceil, at least one)."""
    if int(block_size) <= 0:
        raise ValueError("block_size must be > 0")
    duration = max(0, int(duration_minutes))
    return max(1, -(-duration // int(block_size)))


@dataclass(frozen=True)
class WorkingHours:
    start_hour: int
    end_hour: int

    @property
    def start_minute(self) -> int:
        return self.start_hour * 60

    @property
    def end_minute(self) -> int:
        return self.end_hour * 60


def normalize_hours(start: int | None, end: int | None, default: tuple[int, int]) -> WorkingHours:
    start_h = default[0] if start is None else int(start)
    end_h = default[1] if end is None else int(end)
    if not (0 <= start_h < end_h <= 24):
        return WorkingHours(default[0], default[1])
    return WorkingHours(start_h, end_h)


def slot_starts(day: date, hours: WorkingHours, step_minutes: int):
    """Yield every grid start instant from opening (inclusive) to closing (exclusive)."""
    if int(step_minutes) <= 0:
        raise ValueError("step_minutes must be > 0")
    minute = hours.start_minute
    while minute < hours.end_minute:
        yield business_wall_clock(day, minute)
        minute += int(step_minutes)


def occupied_labels(starts_and_durations, block_size: int) -> list[str]:
    """
    Expand bookings into the "HH:MM" grid labels they cover.

    ``starts_and_durations`` is an iterable of ``(start_instant, minutes)``.
    """
    labels: set[str] = set()
    for start, duration in starts_and_durations:
        for i in range(block_count(duration, block_size)):
            labels.add(format_hhmm(start + timedelta(minutes=i * block_size)))
    return sorted(labels)


def end_of(start: datetime, duration_minutes: int) -> datetime:
    return start + timedelta(minutes=int(duration_minutes))
