from dataclasses import dataclass
from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .core.conflicts import Interval, TimeOffKind, TimeOffRule, find_conflict, time_off_blocks
from .core.fees import BPS_DENOMINATOR, clamp_bps
from .core.slots import (
    WorkingHours,
    end_of,
    normalize_hours,
    occupied_labels,
    slot_starts,
)
from .core.timezone import (
    add_business_days,
    business_day_bounds,
    business_today,
    business_wall_clock,
    format_hhmm,
    parse_business_date,
    parse_hhmm,
    parse_to_instant,
    to_utc,
    to_utc_naive,
    utc_now,
)
from .errors import NotFound, ValidationFailed
from .models import Booking, Service, Shop, Staff, StaffService, TimeOffWindow

logger = structlog.get_logger("shopbook.services")


# ---------------------------------------------------------------------------
# reference data
# ---------------------------------------------------------------------------


def get_shop(db: Session, shop_id: int) -> Shop:
    shop = db.get(Shop, int(shop_id))
    if shop is None:
        raise NotFound("Shop not found", details={"shop_id": shop_id})
    return shop


def get_staff(db: Session, staff_id: int, require_active: bool = True) -> Staff:
    staff = db.get(Staff, int(staff_id))
    if staff is None:
        raise NotFound("Staff member not found", details={"staff_id": staff_id})
    if require_active and not bool(staff.is_active):
        raise ValidationFailed("Staff member is not active", details={"staff_id": staff_id})
    return staff


def get_service(db: Session, service_id: int, require_active: bool = True) -> Service:
    service = db.get(Service, int(service_id))
    if service is None:
        raise NotFound("Service not found", details={"service_id": service_id})
    if require_active and not bool(service.is_active):
        raise ValidationFailed("Service is not active", details={"service_id": service_id})
    return service


def create_shop(
    db: Session,
    name: str,
    platform_fee_bps: int = 0,
    staff_fee_bps: int = 0,
) -> Shop:
    normalized_name = (name or "").strip()
    if not normalized_name:
        raise ValidationFailed("Shop name is required")
    platform_bps, staff_bps = clamp_bps(platform_fee_bps), clamp_bps(staff_fee_bps)
    if platform_bps + staff_bps > BPS_DENOMINATOR:
        raise ValidationFailed("Platform and staff fees exceed 100%")

    shop = Shop(name=normalized_name, platform_fee_bps=platform_bps, staff_fee_bps=staff_bps)
    db.add(shop)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValidationFailed("Shop already exists") from exc
    db.refresh(shop)
    return shop


def update_shop_billing(
    db: Session,
    shop_id: int,
    platform_fee_bps: int | None = None,
    staff_fee_bps: int | None = None,
) -> Shop:
    """Update fee rates; an omitted rate keeps its current value. Rates are clamped to 0..10000."""
    shop = get_shop(db, shop_id)
    next_platform = shop.platform_fee_bps if platform_fee_bps is None else clamp_bps(platform_fee_bps)
    next_staff = shop.staff_fee_bps if staff_fee_bps is None else clamp_bps(staff_fee_bps)
    if next_platform + next_staff > BPS_DENOMINATOR:
        raise ValidationFailed("Platform and staff fees exceed 100%")

    shop.platform_fee_bps = next_platform
    shop.staff_fee_bps = next_staff
    db.commit()
    db.refresh(shop)
    logger.info(
        "shop_billing_updated",
        shop_id=shop.id,
        platform_fee_bps=next_platform,
        staff_fee_bps=next_staff,
    )
    return shop


def create_staff(
    db: Session,
    shop_id: int,
    name: str,
    work_start_hour: int | None = None,
    work_end_hour: int | None = None,
) -> Staff:
    get_shop(db, shop_id)
    normalized_name = (name or "").strip()
    if not normalized_name:
        raise ValidationFailed("Staff name is required")
    if work_start_hour is not None and work_end_hour is not None:
        if not (0 <= int(work_start_hour) < int(work_end_hour) <= 24):
            raise ValidationFailed("Working hours must satisfy 0 <= start < end <= 24")

    staff = Staff(
        shop_id=int(shop_id),
        name=normalized_name,
        work_start_hour=work_start_hour,
        work_end_hour=work_end_hour,
        is_active=True,
    )
    db.add(staff)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValidationFailed("Staff member already exists") from exc
    db.refresh(staff)
    return staff


def list_staff(db: Session, shop_id: int | None = None, include_inactive: bool = False) -> list[Staff]:
    stmt = select(Staff)
    if shop_id is not None:
        stmt = stmt.where(Staff.shop_id == int(shop_id))
    if not include_inactive:
        stmt = stmt.where(Staff.is_active.is_(True))
    return list(db.execute(stmt.order_by(Staff.id.asc())).scalars().all())


def create_service(
    db: Session,
    shop_id: int,
    name: str,
    duration_minutes: int,
    base_price: int,
) -> Service:
    get_shop(db, shop_id)
    normalized_name = (name or "").strip()
    if not normalized_name:
        raise ValidationFailed("Service name is required")
    if int(duration_minutes) <= 0:
        raise ValidationFailed("duration_minutes must be > 0")
    if int(base_price) < 0:
        raise ValidationFailed("base_price must be >= 0")

    service = Service(
        shop_id=int(shop_id),
        name=normalized_name,
        duration_minutes=int(duration_minutes),
        base_price=int(base_price),
        is_active=True,
    )
    db.add(service)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValidationFailed("Service already exists") from exc
    db.refresh(service)
    return service


def set_staff_service(
    db: Session,
    staff_id: int,
    service_id: int,
    price: int | None = None,
    duration_minutes: int | None = None,
) -> StaffService:
    staff = get_staff(db, staff_id, require_active=False)
    service = get_service(db, service_id, require_active=False)
    if staff.shop_id != service.shop_id:
        raise ValidationFailed("Service belongs to another shop")
    if price is not None and int(price) < 0:
        raise ValidationFailed("price must be >= 0")
    if duration_minutes is not None and int(duration_minutes) <= 0:
        raise ValidationFailed("duration_minutes must be > 0")

    row = db.execute(
        select(StaffService).where(
            StaffService.staff_id == staff.id,
            StaffService.service_id == service.id,
        )
    ).scalar_one_or_none()
    if row is None:
        row = StaffService(staff_id=staff.id, service_id=service.id)
        db.add(row)
    row.price = None if price is None else int(price)
    row.duration_minutes = None if duration_minutes is None else int(duration_minutes)
    db.commit()
    db.refresh(row)
    return row


def _staff_service(db: Session, staff_id: int, service_id: int) -> StaffService | None:
    return db.execute(
        select(StaffService).where(
            StaffService.staff_id == int(staff_id),
            StaffService.service_id == int(service_id),
        )
    ).scalar_one_or_none()


def duration_for(db: Session, staff_id: int, service_id: int) -> int:
    """Staff-specific duration when configured, else the service default."""
    override = _staff_service(db, staff_id, service_id)
    if override is not None and override.duration_minutes:
        return int(override.duration_minutes)
    return int(get_service(db, service_id, require_active=False).duration_minutes)


def resolve_price(db: Session, staff_id: int, service_id: int) -> int:
    override = _staff_service(db, staff_id, service_id)
    if override is not None and override.price is not None:
        return int(override.price)
    return int(get_service(db, service_id, require_active=False).base_price or 0)


def list_services_for_staff(
    db: Session,
    shop_id: int | None = None,
    staff_id: int | None = None,
) -> list[dict]:
    stmt = select(Service).where(Service.is_active.is_(True))
    if staff_id is not None:
        staff = get_staff(db, staff_id, require_active=False)
        stmt = stmt.where(Service.shop_id == staff.shop_id)
    elif shop_id is not None:
        stmt = stmt.where(Service.shop_id == int(shop_id))
    services = db.execute(stmt.order_by(Service.id.asc())).scalars().all()

    overrides: dict[int, StaffService] = {}
    if staff_id is not None:
        rows = db.execute(
            select(StaffService).where(StaffService.staff_id == int(staff_id))
        ).scalars().all()
        overrides = {row.service_id: row for row in rows}

    out: list[dict] = []
    for service in services:
        override = overrides.get(service.id)
        final_price = (
            int(override.price)
            if override is not None and override.price is not None
            else int(service.base_price)
        )
        duration = (
            int(override.duration_minutes)
            if override is not None and override.duration_minutes
            else int(service.duration_minutes)
        )
        out.append(
            {
                "id": service.id,
                "shop_id": service.shop_id,
                "name": service.name,
                "duration_minutes": duration,
                "base_price": int(service.base_price),
                "final_price": final_price,
            }
        )
    return out


def working_hours(staff: Staff) -> WorkingHours:
    return normalize_hours(
        staff.work_start_hour,
        staff.work_end_hour,
        (settings.DEFAULT_WORK_START_HOUR, settings.DEFAULT_WORK_END_HOUR),
    )


# ---------------------------------------------------------------------------
# time-off
# ---------------------------------------------------------------------------

_TIME_OFF_ALIASES = {
    "DAILY_RECURRING": TimeOffKind.DAILY_RECURRING,
    "DAILY": TimeOffKind.DAILY_RECURRING,
    "ABSOLUTE_RANGE": TimeOffKind.ABSOLUTE_RANGE,
    "DATE_RANGE": TimeOffKind.ABSOLUTE_RANGE,
    "ABSOLUTE_PARTIAL_DAY": TimeOffKind.ABSOLUTE_PARTIAL_DAY,
    "DATE_PARTIAL": TimeOffKind.ABSOLUTE_PARTIAL_DAY,
}


def parse_time_off_kind(value: str) -> TimeOffKind:
    kind = _TIME_OFF_ALIASES.get(str(value or "").strip().upper())
    if kind is None:
        raise ValidationFailed(f"Unknown time-off kind: {value!r}")
    return kind


def create_time_off(
    db: Session,
    staff_id: int,
    kind: str,
    *,
    start_at=None,
    end_at=None,
    start_date: str | None = None,
    end_date: str | None = None,
    day: str | None = None,
    start_time: str | None = None,
    end_time: str | None = None,
    start_minute: int | None = None,
    end_minute: int | None = None,
    note: str | None = None,
    enabled: bool = True,
) -> TimeOffWindow:
    """
    Register a time-off window.

    ``ABSOLUTE_RANGE`` takes ``start_at``/``end_at`` instants or whole business
    days ``start_date``..``end_date`` (end inclusive). ``ABSOLUTE_PARTIAL_DAY``
    takes instants or ``day`` plus ``start_time``/``end_time`` (HH:MM).
    ``DAILY_RECURRING`` takes minutes of day or ``start_time``/``end_time``.
    """
    get_staff(db, staff_id, require_active=False)
    resolved_kind = parse_time_off_kind(kind)
    row = TimeOffWindow(
        staff_id=int(staff_id),
        kind=resolved_kind.value,
        enabled=bool(enabled),
        note=(note or "").strip() or None,
    )

    if resolved_kind == TimeOffKind.DAILY_RECURRING:
        if start_minute is None or end_minute is None:
            if not start_time or not end_time:
                raise ValidationFailed(
                    "DAILY_RECURRING needs start_minute/end_minute or start_time/end_time"
                )
            start_minute, end_minute = parse_hhmm(start_time), parse_hhmm(end_time)
        start_minute, end_minute = int(start_minute), int(end_minute)
        if not (0 <= start_minute < end_minute <= 24 * 60):
            raise ValidationFailed("Invalid minutes (start >= end)")
        row.start_minute, row.end_minute = start_minute, end_minute
    else:
        if start_at is not None and end_at is not None:
            start, end = parse_to_instant(start_at), parse_to_instant(end_at)
        elif resolved_kind == TimeOffKind.ABSOLUTE_RANGE:
            if not start_date or not end_date:
                raise ValidationFailed("ABSOLUTE_RANGE needs start_at/end_at or start_date/end_date")
            start, _ = business_day_bounds(start_date)
            end, _ = business_day_bounds(add_business_days(end_date, 1))
        else:
            if not day or not start_time or not end_time:
                raise ValidationFailed(
                    "ABSOLUTE_PARTIAL_DAY needs start_at/end_at or day+start_time/end_time"
                )
            parsed_day = parse_business_date(day)
            start = business_wall_clock(parsed_day, parse_hhmm(start_time))
            end = business_wall_clock(parsed_day, parse_hhmm(end_time))
        if start >= end:
            raise ValidationFailed("Invalid range (start >= end)")
        row.start_at, row.end_at = to_utc_naive(start), to_utc_naive(end)

    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("time_off_created", staff_id=row.staff_id, time_off_id=row.id, kind=row.kind)
    return row


def list_time_off(db: Session, staff_id: int, include_disabled: bool = False) -> list[TimeOffWindow]:
    stmt = select(TimeOffWindow).where(TimeOffWindow.staff_id == int(staff_id))
    if not include_disabled:
        stmt = stmt.where(TimeOffWindow.enabled.is_(True))
    return list(db.execute(stmt.order_by(TimeOffWindow.id.desc())).scalars().all())


def disable_time_off(db: Session, staff_id: int, time_off_id: int) -> TimeOffWindow:
    row = db.get(TimeOffWindow, int(time_off_id))
    if row is None or row.staff_id != int(staff_id):
        raise NotFound("Time-off window not found", details={"time_off_id": time_off_id})
    if row.enabled:
        row.enabled = False
        db.commit()
        db.refresh(row)
    return row


def to_time_off_rule(row: TimeOffWindow) -> TimeOffRule:
    return TimeOffRule(
        kind=TimeOffKind(row.kind),
        start=to_utc(row.start_at) if row.start_at else None,
        end=to_utc(row.end_at) if row.end_at else None,
        start_minute=row.start_minute,
        end_minute=row.end_minute,
        enabled=bool(row.enabled),
        ref=row.id,
    )


# ---------------------------------------------------------------------------
# day windows used by availability and by the booking transaction
# ---------------------------------------------------------------------------


def load_occupying_intervals(
    db: Session,
    staff_id: int,
    window_start: datetime,
    window_end: datetime,
) -> list[Interval]:
    """Occupying bookings of one staff member that touch ``[window_start, window_end)``."""
    rows = db.execute(
        select(Booking)
        .where(
            Booking.staff_id == int(staff_id),
            Booking.slot_lock.is_(True),
            Booking.start_at < to_utc_naive(window_end),
            Booking.end_at > to_utc_naive(window_start),
        )
        .order_by(Booking.start_at.asc())
    ).scalars().all()
    return [Interval(start=to_utc(b.start_at), end=to_utc(b.end_at), ref=b.id) for b in rows]


def load_time_off_rules(
    db: Session,
    staff_id: int,
    window_start: datetime,
    window_end: datetime,
) -> list[TimeOffRule]:
    rows = db.execute(
        select(TimeOffWindow).where(
            TimeOffWindow.staff_id == int(staff_id),
            TimeOffWindow.enabled.is_(True),
            or_(
                TimeOffWindow.kind == TimeOffKind.DAILY_RECURRING.value,
                (TimeOffWindow.start_at < to_utc_naive(window_end))
                & (TimeOffWindow.end_at > to_utc_naive(window_start)),
            ),
        )
    ).scalars().all()
    return [to_time_off_rule(row) for row in rows]


# ---------------------------------------------------------------------------
# availability
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SlotAvailability:
    time: str
    start_at: datetime
    available: bool
    reason: str | None = None


class AvailabilityView:
    """
    Candidate start times for one staff member on one business day.

    Bookings and time-off are loaded once by the caller; iterating is pure and
    may be repeated. The result is advisory: a concurrent booking can claim a
    slot that still shows as free here, and the booking transaction re-checks.
    """

    def __init__(
        self,
        day: date,
        hours: WorkingHours,
        duration_minutes: int,
        step_minutes: int,
        bookings: list[Interval],
        time_off: list[TimeOffRule],
        not_before: datetime | None = None,
        closed_reason: str | None = None,
    ) -> None:
        self.day = day
        self.hours = hours
        self.duration_minutes = int(duration_minutes)
        self.step_minutes = int(step_minutes)
        self.bookings = list(bookings)
        self.time_off = list(time_off)
        self.not_before = not_before
        self.closed_reason = closed_reason
        self.closing = business_wall_clock(day, hours.end_minute)

    def _reason(self, start: datetime) -> str | None:
        if self.closed_reason is not None:
            return self.closed_reason
        end = end_of(start, self.duration_minutes)
        if end > self.closing:
            return "closing"
        if self.not_before is not None and start < self.not_before:
            return "advance_notice"
        hit = find_conflict(start, end, self.bookings, ())
        if hit is not None:
            return "booked"
        if any(time_off_blocks(start, end, rule) for rule in self.time_off):
            return "time_off"
        return None

    def __iter__(self):
        for start in slot_starts(self.day, self.hours, self.step_minutes):
            reason = self._reason(start)
            yield SlotAvailability(
                time=format_hhmm(start),
                start_at=start,
                available=reason is None,
                reason=reason,
            )

    def as_list(self) -> list[SlotAvailability]:
        return list(self)


def list_free_slots(
    db: Session,
    staff_id: int,
    day: str | date,
    service_id: int | None = None,
    now: datetime | None = None,
    min_advance_days: int = 0,
) -> AvailabilityView:
    """
    Slot grid for ``day``. ``min_advance_days`` closes every slot on days the
    caller's channel may not book yet (reason ``"advance_days"``).
    """
    staff = get_staff(db, staff_id)
    parsed_day = parse_business_date(day)
    if service_id is not None:
        service = get_service(db, service_id)
        if service.shop_id != staff.shop_id:
            raise ValidationFailed("Service belongs to another shop")
        duration = duration_for(db, staff.id, service.id)
    else:
        duration = int(settings.SLOT_MINUTES)

    day_start, day_end = business_day_bounds(parsed_day)
    # bookings may start the evening before and still run into this day
    window_start = day_start - timedelta(days=1)
    current = to_utc(now) if now is not None else utc_now()
    not_before = None
    if parsed_day == business_today(current):
        not_before = current + timedelta(minutes=int(settings.MIN_ADVANCE_MINUTES))
    closed_reason = None
    earliest_day = business_today(current) + timedelta(days=int(min_advance_days))
    if min_advance_days > 0 and parsed_day < earliest_day:
        closed_reason = "advance_days"

    return AvailabilityView(
        day=parsed_day,
        hours=working_hours(staff),
        duration_minutes=duration,
        step_minutes=int(settings.SLOT_MINUTES),
        bookings=load_occupying_intervals(db, staff.id, window_start, day_end),
        time_off=load_time_off_rules(db, staff.id, day_start, day_end),
        not_before=not_before,
        closed_reason=closed_reason,
    )


def occupied_slot_labels(db: Session, staff_id: int, day: str | date) -> list[str]:
    """Grid labels ("HH:MM") covered by occupying bookings starting on ``day``."""
    get_staff(db, staff_id, require_active=False)
    day_start, day_end = business_day_bounds(day)
    rows = db.execute(
        select(Booking.start_at, Booking.duration_minutes).where(
            Booking.staff_id == int(staff_id),
            Booking.slot_lock.is_(True),
            Booking.start_at >= to_utc_naive(day_start),
            Booking.start_at < to_utc_naive(day_end),
        )
    ).all()
    return occupied_labels(
        ((to_utc(start), int(duration or settings.SLOT_MINUTES)) for start, duration in rows),
        int(settings.SLOT_MINUTES),
    )
