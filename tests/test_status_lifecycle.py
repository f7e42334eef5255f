from datetime import datetime, timezone

import pytest

from shopbook.bookings import cancel, complete, create_booking, list_booking_events, set_status
from shopbook.core.status import BookingStatus, can_transition, canonical_status, occupies_slot
from shopbook.errors import InvalidStatus, NotFound, StatusConflict
from shopbook.models import Booking

NOW = datetime(2030, 3, 1, 8, 0, tzinfo=timezone.utc)


def make_booking(db, setup, start="2030-03-12T14:00:00"):
    return create_booking(
        db,
        shop_id=setup.shop_id,
        staff_id=setup.staff_id,
        service_id=setup.haircut_id,
        start=start,
        customer_name="Jan",
        now=NOW,
    )


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("cancelled", BookingStatus.CANCELLED),
        ("CANCEL", BookingStatus.CANCELLED),
        ("Canceled", BookingStatus.CANCELLED),
        (" booked ", BookingStatus.SCHEDULED),
        ("pending", BookingStatus.SCHEDULED),
        ("done", BookingStatus.COMPLETED),
        ("Confirmed", BookingStatus.CONFIRMED),
        ("archived", BookingStatus.UNKNOWN),
        ("", BookingStatus.UNKNOWN),
        (None, BookingStatus.UNKNOWN),
    ],
)
def test_canonical_status(raw, expected):
    assert canonical_status(raw) == expected


def test_transition_table():
    assert can_transition("SCHEDULED", "CONFIRMED")
    assert can_transition("booked", "done")
    assert can_transition("CONFIRMED", "CANCELLED")
    assert can_transition("CANCELLED", "canceled")
    assert not can_transition("COMPLETED", "CANCELLED")
    assert not can_transition("CANCELLED", "SCHEDULED")
    assert not can_transition("SCHEDULED", "whatever")
    assert occupies_slot("CONFIRMED")
    assert not occupies_slot("Canceled")


def test_complete_stamps_completed_at_once(db, shop_setup):
    booking = make_booking(db, shop_setup)

    first = complete(db, booking.id, now=datetime(2030, 3, 12, 7, 0, tzinfo=timezone.utc))
    assert first.changed is True
    assert first.booking.status == "COMPLETED"
    stamped = first.booking.completed_at
    assert stamped == datetime(2030, 3, 12, 7, 0)

    again = complete(db, booking.id, now=datetime(2030, 3, 12, 9, 0, tzinfo=timezone.utc))
    assert again.changed is False
    assert again.booking.completed_at == stamped


def test_completed_missing_timestamp_is_repaired(db, shop_setup):
    booking = make_booking(db, shop_setup)
    row = db.get(Booking, booking.id)
    row.status = "COMPLETED"
    row.completed_at = None
    db.commit()

    result = set_status(db, booking.id, "done", now=NOW)
    assert result.changed is True
    assert result.booking.completed_at is not None


def test_cancel_releases_slot_and_is_idempotent(db, shop_setup):
    booking = make_booking(db, shop_setup)

    first = cancel(db, booking.id, now=NOW)
    assert first.changed is True
    assert first.booking.status == "CANCELLED"
    assert first.booking.slot_lock is None
    assert first.booking.occupies_slot is False
    assert first.booking.completed_at is None

    second = cancel(db, booking.id, now=NOW)
    assert second.changed is False
    assert second.booking.status == "CANCELLED"


def test_cancel_rewrites_legacy_spelling(db, shop_setup):
    booking = make_booking(db, shop_setup)
    row = db.get(Booking, booking.id)
    row.status = "canceled"
    row.slot_lock = True
    db.commit()

    result = cancel(db, booking.id, now=NOW)
    assert result.changed is True
    assert result.booking.status == "CANCELLED"
    assert result.booking.slot_lock is None


def test_cancel_after_complete_is_rejected_and_leaves_booking(db, shop_setup):
    booking = make_booking(db, shop_setup)
    complete(db, booking.id, now=NOW)

    with pytest.raises(StatusConflict, match="Cannot cancel a completed booking"):
        cancel(db, booking.id, now=NOW)

    db.expire_all()
    row = db.get(Booking, booking.id)
    assert row.status == "COMPLETED"
    assert row.completed_at is not None
    assert row.slot_lock is True


def test_completed_at_tracks_status_across_transitions(db, shop_setup):
    booking = make_booking(db, shop_setup)
    for target in ["CONFIRMED", "CONFIRMED", "COMPLETED"]:
        result = set_status(db, booking.id, target, now=NOW)
        row = result.booking
        assert (row.status == "COMPLETED") == (row.completed_at is not None)


def test_cancelled_cannot_be_revived(db, shop_setup):
    booking = make_booking(db, shop_setup)
    cancel(db, booking.id, now=NOW)
    with pytest.raises(StatusConflict):
        set_status(db, booking.id, "SCHEDULED", now=NOW)


def test_unknown_target_and_unknown_stored_status(db, shop_setup):
    booking = make_booking(db, shop_setup)
    with pytest.raises(InvalidStatus):
        set_status(db, booking.id, "ARCHIVED", now=NOW)

    row = db.get(Booking, booking.id)
    row.status = "mystery"
    db.commit()
    with pytest.raises(StatusConflict):
        set_status(db, booking.id, "CONFIRMED", now=NOW)


def test_missing_booking(db, shop_setup):
    with pytest.raises(NotFound):
        cancel(db, 999, now=NOW)


def test_status_events_are_recorded(db, shop_setup):
    booking = make_booking(db, shop_setup)
    set_status(db, booking.id, "CONFIRMED", actor="desk", now=NOW)
    cancel(db, booking.id, actor="desk", now=NOW)
    cancel(db, booking.id, actor="desk", now=NOW)

    events = list_booking_events(db, booking.id)
    assert [(e.from_status, e.to_status) for e in events] == [
        (None, "SCHEDULED"),
        ("SCHEDULED", "CONFIRMED"),
        ("CONFIRMED", "CANCELLED"),
    ]
    assert events[-1].actor == "desk"
