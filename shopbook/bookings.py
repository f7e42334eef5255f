"""
Booking creation, status lifecycle and settlement.

Creation is serialized per (staff member, business day) through
``exclusive_sections``, one key for every day the booking touches. Inside the
section the surrounding bookings and time-off are re-read in a fresh
transaction before the row is inserted. Status changes and settlement touch a
single booking and rely on one read-then-write transaction with a row lock.
"""

import enum
from dataclasses import dataclass
from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .core.conflicts import Interval, find_conflict
from .core.fees import split_amount
from .core.locking import LockError, booking_lock_keys, exclusive_sections
from .core.slots import end_of
from .core.status import ALLOWED_TRANSITIONS, BookingStatus, canonical_status
from .core.timezone import (
    business_day_bounds,
    business_day_string,
    business_days_spanned,
    business_month_bounds,
    business_today,
    business_wall_clock,
    business_week_bounds,
    parse_business_date,
    parse_to_instant,
    to_business,
    to_utc,
    to_utc_naive,
    utc_now,
)
from .errors import (
    InvalidStatus,
    NotFound,
    SlotUnavailable,
    StatusConflict,
    SystemBusy,
    ValidationFailed,
)
from .models import Booking, BookingStatusEvent, Settlement, Shop
from .services import (
    duration_for,
    get_service,
    get_shop,
    get_staff,
    load_occupying_intervals,
    load_time_off_rules,
    resolve_price,
    working_hours,
)

logger = structlog.get_logger("shopbook.bookings")

SLOT_UNIQUE_CONSTRAINT = "uq_bookings_staff_start_slot"


class BookingSource(str, enum.Enum):
    CONSUMER = "consumer"
    STAFF = "staff"


_SOURCE_ALIASES = {
    "consumer": BookingSource.CONSUMER,
    "customer": BookingSource.CONSUMER,
    "miniapp": BookingSource.CONSUMER,
    "public": BookingSource.CONSUMER,
    "staff": BookingSource.STAFF,
    "admin": BookingSource.STAFF,
    "barber": BookingSource.STAFF,
}


def parse_source(value) -> BookingSource:
    if isinstance(value, BookingSource):
        return value
    raw = str(value or "").strip().lower()
    if not raw:
        return BookingSource.STAFF
    source = _SOURCE_ALIASES.get(raw)
    if source is None:
        raise ValidationFailed(f"Unknown booking source: {value!r}")
    return source


@dataclass
class StatusChange:
    changed: bool
    booking: Booking


@dataclass
class SettlementResult:
    already_settled: bool
    ledger_entry: Settlement
    booking: Booking


def add_status_event(
    db: Session,
    booking_id: int,
    from_status: str | None,
    to_status: str,
    actor: str | None = None,
    note: str | None = None,
) -> BookingStatusEvent:
    event = BookingStatusEvent(
        booking_id=booking_id,
        from_status=from_status,
        to_status=to_status,
        actor=(actor or "").strip() or None,
        note=(note or "").strip() or None,
    )
    db.add(event)
    db.flush()
    return event


# ---------------------------------------------------------------------------
# creation
# ---------------------------------------------------------------------------


def _normalize_phone(phone: str | None) -> str | None:
    if phone is None:
        return None
    cleaned = "".join(ch for ch in str(phone).strip() if ch.isdigit() or ch == "+")
    if not cleaned:
        return None
    if len(cleaned) < 6:
        raise ValidationFailed("Phone number is too short")
    return cleaned


def _check_channel_policy(
    source: BookingSource,
    start: datetime,
    end: datetime,
    hours,
    now: datetime,
) -> None:
    if source != BookingSource.CONSUMER:
        return
    start_day = parse_business_date(business_day_string(start))
    earliest = business_today(now) + timedelta(days=int(settings.CONSUMER_MIN_ADVANCE_DAYS))
    if start_day < earliest:
        raise ValidationFailed(
            "Online bookings must be made at least "
            f"{int(settings.CONSUMER_MIN_ADVANCE_DAYS)} day(s) in advance",
            details={"earliest_day": earliest.isoformat()},
        )
    opening = business_wall_clock(start_day, hours.start_minute)
    closing = business_wall_clock(start_day, hours.end_minute)
    if start < opening or end > closing:
        raise ValidationFailed("Requested time is outside working hours")


def _is_slot_unique_violation(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    diag = getattr(orig, "diag", None)
    constraint_name = getattr(diag, "constraint_name", "") if diag is not None else ""
    if constraint_name:
        return constraint_name == SLOT_UNIQUE_CONSTRAINT
    message = str(orig or exc)
    if SLOT_UNIQUE_CONSTRAINT in message:
        return True
    # SQLite names columns instead of the constraint
    return "UNIQUE constraint failed" in message and "bookings.staff_id" in message


def create_booking(
    db: Session,
    *,
    staff_id: int,
    service_id: int,
    shop_id: int,
    start,
    customer_name: str,
    customer_phone: str | None = None,
    source=BookingSource.STAFF,
    actor: str | None = None,
    now: datetime | None = None,
    lock_timeout: float | None = None,
) -> Booking:
    """
    Admit or reject a new booking.

    Raises ``ValidationFailed``/``NotFound`` before anything is locked,
    ``SystemBusy`` when the (staff, day) key cannot be locked in time, and
    ``SlotUnavailable`` when the interval collides with an occupying booking or
    time-off, whether detected by the in-transaction check or by the storage
    uniqueness constraint.
    """
    current = to_utc(now) if now is not None else utc_now()
    channel = parse_source(source)
    name = (customer_name or "").strip()
    if not name:
        raise ValidationFailed("Customer name is required")
    phone = _normalize_phone(customer_phone)

    start_at = parse_to_instant(start)
    shop = get_shop(db, shop_id)
    staff = get_staff(db, staff_id)
    service = get_service(db, service_id)
    if staff.shop_id != shop.id or service.shop_id != shop.id:
        raise ValidationFailed("Staff member and service must belong to the shop")

    duration = duration_for(db, staff.id, service.id)
    end_at = end_of(start_at, duration)
    _check_channel_policy(channel, start_at, end_at, working_hours(staff), current)

    day = business_day_string(start_at)
    # a booking running past midnight must also exclude bookings starting the next day
    keys = booking_lock_keys(staff.id, business_days_spanned(start_at, end_at))
    log = logger.bind(staff_id=staff.id, service_id=service.id, start_at=start_at.isoformat(), day=day)

    # end the validation reads so the locked section starts from a fresh snapshot
    db.rollback()

    try:
        with exclusive_sections(keys, timeout=lock_timeout):
            booking = _insert_locked(
                db,
                shop_id=shop.id,
                staff_id=staff.id,
                service_id=service.id,
                start_at=start_at,
                end_at=end_at,
                duration=duration,
                day=day,
                channel=channel,
                customer_name=name,
                customer_phone=phone,
                actor=actor,
                log=log,
            )
    except LockError as exc:
        log.warning("booking_lock_timeout", key=exc.key, error=str(exc))
        raise SystemBusy(
            "Booking system is busy, please retry",
            retry_after_seconds=settings.BUSY_RETRY_AFTER_SECONDS,
            details={"staff_id": staff.id, "day": day},
        ) from exc

    log.info("booking_created", booking_id=booking.id, source=channel.value, price=booking.price)
    return booking


def _insert_locked(
    db: Session,
    *,
    shop_id: int,
    staff_id: int,
    service_id: int,
    start_at: datetime,
    end_at: datetime,
    duration: int,
    day: str,
    channel: BookingSource,
    customer_name: str,
    customer_phone: str | None,
    actor: str | None,
    log,
) -> Booking:
    try:
        day_start, day_end = business_day_bounds(day)
        window_start = min(day_start - timedelta(days=1), start_at)
        window_end = max(day_end, end_at)
        bookings = load_occupying_intervals(db, staff_id, window_start, window_end)
        time_off = load_time_off_rules(db, staff_id, window_start, window_end)
        price = resolve_price(db, staff_id, service_id)

        hit = find_conflict(start_at, end_at, bookings, time_off)
        if hit is not None:
            db.rollback()
            blocker = "booking" if isinstance(hit, Interval) else "time_off"
            log.info("booking_conflict", blocker=blocker, blocker_ref=hit.ref)
            raise SlotUnavailable(
                "The requested time is no longer available",
                details={"blocker": blocker, "blocker_ref": hit.ref},
            )

        booking = Booking(
            shop_id=shop_id,
            staff_id=staff_id,
            service_id=service_id,
            start_at=to_utc_naive(start_at),
            end_at=to_utc_naive(end_at),
            duration_minutes=int(duration),
            status=BookingStatus.SCHEDULED.value,
            slot_lock=True,
            source=channel.value,
            customer_name=customer_name,
            customer_phone=customer_phone,
            price=int(price),
            completed_at=None,
        )
        db.add(booking)
        db.flush()
        add_status_event(
            db,
            booking_id=booking.id,
            from_status=None,
            to_status=BookingStatus.SCHEDULED.value,
            actor=actor,
            note="created",
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if not _is_slot_unique_violation(exc):
            raise
        log.warning("booking_unique_fallback", constraint=SLOT_UNIQUE_CONSTRAINT)
        raise SlotUnavailable(
            "The requested time is no longer available",
            details={"blocker": "booking"},
        ) from exc
    except SlotUnavailable:
        raise
    except Exception:
        db.rollback()
        raise

    db.refresh(booking)
    return booking


# ---------------------------------------------------------------------------
# queries
# ---------------------------------------------------------------------------


def get_booking(db: Session, booking_id: int) -> Booking:
    booking = db.get(Booking, int(booking_id))
    if booking is None:
        raise NotFound("Booking not found", details={"booking_id": booking_id})
    return booking


def list_bookings(
    db: Session,
    day: str | date,
    range_name: str = "day",
    staff_id: int | None = None,
    shop_id: int | None = None,
) -> list[Booking]:
    bounds = {
        "day": business_day_bounds,
        "week": business_week_bounds,
        "month": business_month_bounds,
    }.get((range_name or "day").strip().lower(), business_day_bounds)
    start, end = bounds(day)
    stmt = select(Booking).where(
        Booking.start_at >= to_utc_naive(start),
        Booking.start_at < to_utc_naive(end),
    )
    if staff_id is not None:
        stmt = stmt.where(Booking.staff_id == int(staff_id))
    if shop_id is not None:
        stmt = stmt.where(Booking.shop_id == int(shop_id))
    return list(db.execute(stmt.order_by(Booking.start_at.asc(), Booking.id.asc())).scalars().all())


def list_booking_events(db: Session, booking_id: int) -> list[BookingStatusEvent]:
    get_booking(db, booking_id)
    return list(
        db.execute(
            select(BookingStatusEvent)
            .where(BookingStatusEvent.booking_id == int(booking_id))
            .order_by(BookingStatusEvent.created_at.asc(), BookingStatusEvent.id.asc())
        )
        .scalars()
        .all()
    )


# ---------------------------------------------------------------------------
# status lifecycle
# ---------------------------------------------------------------------------


def _lock_booking_row(db: Session, booking_id: int) -> Booking:
    booking = db.execute(
        select(Booking)
        .where(Booking.id == int(booking_id))
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if booking is None:
        raise NotFound("Booking not found", details={"booking_id": booking_id})
    return booking


def _apply_status(
    db: Session,
    booking: Booking,
    target: BookingStatus,
    now: datetime,
    actor: str | None,
    note: str | None,
) -> bool:
    """Mutate ``booking`` towards ``target`` inside the caller's transaction."""
    current = canonical_status(booking.status)
    if current == BookingStatus.UNKNOWN:
        raise StatusConflict(
            f"Booking has an unrecognized status: {booking.status!r}",
            details={"booking_id": booking.id},
        )

    if current == BookingStatus.COMPLETED and target != BookingStatus.COMPLETED:
        message = (
            "Cannot cancel a completed booking"
            if target == BookingStatus.CANCELLED
            else "Completed bookings cannot change status"
        )
        raise StatusConflict(message, details={"booking_id": booking.id, "status": current.value})

    if current != target and target not in ALLOWED_TRANSITIONS[current]:
        raise StatusConflict(
            f"Invalid status transition: {current.value} -> {target.value}",
            details={"booking_id": booking.id},
        )

    changed = False
    if booking.status != target.value:
        booking.status = target.value
        changed = True

    if target == BookingStatus.COMPLETED:
        # an existing completion time is history, keep it
        if booking.completed_at is None:
            booking.completed_at = to_utc_naive(now)
            changed = True
    elif booking.completed_at is not None:
        booking.completed_at = None
        changed = True

    desired_lock = None if target == BookingStatus.CANCELLED else True
    if booking.slot_lock != desired_lock:
        booking.slot_lock = desired_lock
        changed = True

    if changed:
        add_status_event(
            db,
            booking_id=booking.id,
            from_status=current.value,
            to_status=target.value,
            actor=actor,
            note=note or ("repaired" if current == target else None),
        )
    return changed


def set_status(
    db: Session,
    booking_id: int,
    target_status,
    actor: str | None = None,
    note: str | None = None,
    now: datetime | None = None,
) -> StatusChange:
    target = canonical_status(target_status)
    if target == BookingStatus.UNKNOWN:
        raise InvalidStatus(f"Unknown booking status: {target_status!r}")
    current_time = to_utc(now) if now is not None else utc_now()

    try:
        booking = _lock_booking_row(db, booking_id)
        previous = booking.status
        changed = _apply_status(db, booking, target, current_time, actor, note)
        db.commit()
    except Exception:
        db.rollback()
        raise

    if changed:
        logger.info(
            "booking_status_changed",
            booking_id=booking.id,
            from_status=previous,
            to_status=booking.status,
        )
    db.refresh(booking)
    return StatusChange(changed=changed, booking=booking)


def cancel(db: Session, booking_id: int, actor: str | None = None, now: datetime | None = None) -> StatusChange:
    return set_status(db, booking_id, BookingStatus.CANCELLED, actor=actor, now=now)


def complete(db: Session, booking_id: int, actor: str | None = None, now: datetime | None = None) -> StatusChange:
    return set_status(db, booking_id, BookingStatus.COMPLETED, actor=actor, now=now)


# ---------------------------------------------------------------------------
# settlement
# ---------------------------------------------------------------------------


def _existing_settlement(db: Session, booking_id: int) -> Settlement | None:
    return db.execute(
        select(Settlement).where(Settlement.booking_id == int(booking_id))
    ).scalar_one_or_none()


def settle(
    db: Session,
    booking_id: int,
    actor: str | None = None,
    now: datetime | None = None,
) -> SettlementResult:
    """
    Complete (if needed) and settle a booking exactly once.

    A second call returns the stored ledger entry with ``already_settled``
    set. Concurrent first calls race on the unique ``booking_id`` of the
    ledger; the loser rolls back and returns the winner's entry.
    """
    current_time = to_utc(now) if now is not None else utc_now()

    try:
        booking = _lock_booking_row(db, booking_id)
        existing = _existing_settlement(db, booking.id)
        if existing is not None:
            db.commit()
            logger.info("settlement_replayed", booking_id=booking.id, settlement_id=existing.id)
            return SettlementResult(already_settled=True, ledger_entry=existing, booking=booking)

        if canonical_status(booking.status) == BookingStatus.CANCELLED:
            raise StatusConflict(
                "Cannot settle a cancelled booking", details={"booking_id": booking.id}
            )
        _apply_status(db, booking, BookingStatus.COMPLETED, current_time, actor, "settle")

        shop = db.get(Shop, booking.shop_id)
        split = split_amount(
            int(booking.price or 0),
            int(shop.platform_fee_bps if shop else 0),
            int(shop.staff_fee_bps if shop else 0),
        )
        entry = Settlement(
            booking_id=booking.id,
            total_amount=split.total_amount,
            platform_fee_bps=split.platform_fee_bps,
            platform_fee_amount=split.platform_fee_amount,
            staff_fee_bps=split.staff_fee_bps,
            staff_fee_amount=split.staff_fee_amount,
            shop_amount=split.shop_amount,
            created_at=to_utc_naive(current_time),
        )
        db.add(entry)
        db.flush()
        booking.settlement_id = entry.id
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _existing_settlement(db, booking_id)
        if existing is None:
            raise
        logger.info("settlement_replayed", booking_id=int(booking_id), settlement_id=existing.id)
        return SettlementResult(
            already_settled=True,
            ledger_entry=existing,
            booking=get_booking(db, booking_id),
        )
    except Exception:
        db.rollback()
        raise

    logger.info(
        "settlement_created",
        booking_id=booking.id,
        settlement_id=entry.id,
        total_amount=entry.total_amount,
        shop_amount=entry.shop_amount,
    )
    db.refresh(booking)
    return SettlementResult(already_settled=False, ledger_entry=entry, booking=booking)


def booking_local_start(booking: Booking) -> datetime:
    return to_business(to_utc(booking.start_at))
