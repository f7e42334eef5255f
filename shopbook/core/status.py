import enum


class BookingStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"


# historical spellings seen in stored rows and client payloads
_SYNONYMS = {
    "SCHEDULED": BookingStatus.SCHEDULED,
    "BOOKED": BookingStatus.SCHEDULED,
    "PENDING": BookingStatus.SCHEDULED,
    "CONFIRMED": BookingStatus.CONFIRMED,
    "COMPLETED": BookingStatus.COMPLETED,
    "DONE": BookingStatus.COMPLETED,
    "CANCELLED": BookingStatus.CANCELLED,
    "CANCELED": BookingStatus.CANCELLED,
    "CANCEL": BookingStatus.CANCELLED,
}

ALLOWED_TRANSITIONS = {
    BookingStatus.SCHEDULED: frozenset(
        {BookingStatus.CONFIRMED, BookingStatus.COMPLETED, BookingStatus.CANCELLED}
    ),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


def canonical_status(value) -> BookingStatus:
    if isinstance(value, BookingStatus):
        return value
    raw = str(value if value is not None else "").strip().upper()
    return _SYNONYMS.get(raw, BookingStatus.UNKNOWN)


def occupies_slot(status) -> bool:
    return canonical_status(status) != BookingStatus.CANCELLED


def can_transition(current, target) -> bool:
    current_status = canonical_status(current)
    target_status = canonical_status(target)
    if target_status == BookingStatus.UNKNOWN:
        return False
    if current_status == target_status:
        return True
    return target_status in ALLOWED_TRANSITIONS.get(current_status, frozenset())
