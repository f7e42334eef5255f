from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.orm import Session

from .bookings import (
    BookingSource,
    booking_local_start,
    cancel,
    complete,
    create_booking,
    get_booking,
    list_booking_events,
    list_bookings,
    set_status,
    settle,
)
from .config import settings
from .core.timezone import to_utc
from .db import get_db
from .errors import DomainError
from .idempotency import cleanup_idempotency_records
from .models import Booking, Settlement, Shop, Staff, StaffService, TimeOffWindow
from .schemas import (
    AvailabilityOut,
    BookingActionIn,
    BookingCreate,
    BookingOut,
    BookingStatusEventOut,
    BookingStatusUpdate,
    OccupiedOut,
    PublicBookingCreate,
    ServiceCreate,
    ServiceOut,
    SettleOut,
    SettlementOut,
    ShopBillingUpdate,
    ShopCreate,
    ShopOut,
    SlotOut,
    StaffCreate,
    StaffOut,
    StaffServiceOut,
    StaffServiceUpdate,
    StatusChangeOut,
    TimeOffCreate,
    TimeOffOut,
)
from .services import (
    create_service,
    create_shop,
    create_staff,
    create_time_off,
    disable_time_off,
    get_shop,
    list_free_slots,
    list_services_for_staff,
    list_staff,
    list_time_off,
    occupied_slot_labels,
    set_staff_service,
    update_shop_billing,
)

router = APIRouter(prefix="/api")
public_router = APIRouter(prefix="/public")


def _to_booking_out(b: Booking) -> BookingOut:
    return BookingOut(
        id=b.id,
        shop_id=b.shop_id,
        staff_id=b.staff_id,
        service_id=b.service_id,
        start_at=to_utc(b.start_at),
        end_at=to_utc(b.end_at),
        start_local=booking_local_start(b).isoformat(),
        duration_minutes=b.duration_minutes,
        status=b.status,
        occupies_slot=b.occupies_slot,
        source=b.source,
        customer_name=b.customer_name,
        customer_phone=b.customer_phone,
        price=int(b.price or 0),
        completed_at=to_utc(b.completed_at) if b.completed_at else None,
        settlement_id=b.settlement_id,
        created_at=to_utc(b.created_at),
    )


def _to_settlement_out(row: Settlement) -> SettlementOut:
    return SettlementOut(
        id=row.id,
        booking_id=row.booking_id,
        total_amount=row.total_amount,
        platform_fee_bps=row.platform_fee_bps,
        platform_fee_amount=row.platform_fee_amount,
        staff_fee_bps=row.staff_fee_bps,
        staff_fee_amount=row.staff_fee_amount,
        shop_amount=row.shop_amount,
        created_at=to_utc(row.created_at),
    )


def _to_shop_out(shop: Shop) -> ShopOut:
    return ShopOut(
        id=shop.id,
        name=shop.name,
        platform_fee_bps=shop.platform_fee_bps,
        staff_fee_bps=shop.staff_fee_bps,
    )


def _to_staff_out(staff: Staff) -> StaffOut:
    return StaffOut(
        id=staff.id,
        shop_id=staff.shop_id,
        name=staff.name,
        work_start_hour=staff.work_start_hour,
        work_end_hour=staff.work_end_hour,
        is_active=bool(staff.is_active),
    )


def _to_time_off_out(row: TimeOffWindow) -> TimeOffOut:
    return TimeOffOut(
        id=row.id,
        staff_id=row.staff_id,
        kind=row.kind,
        start_at=to_utc(row.start_at) if row.start_at else None,
        end_at=to_utc(row.end_at) if row.end_at else None,
        start_minute=row.start_minute,
        end_minute=row.end_minute,
        enabled=bool(row.enabled),
        note=row.note,
    )


def _availability(
    db: Session,
    staff_id: int,
    day: date,
    service_id: Optional[int],
    min_advance_days: int = 0,
) -> AvailabilityOut:
    try:
        view = list_free_slots(
            db,
            staff_id=staff_id,
            day=day,
            service_id=service_id,
            min_advance_days=min_advance_days,
        )
    except DomainError as exc:
        raise exc.to_http_exception()
    return AvailabilityOut(
        date=view.day.isoformat(),
        staff_id=staff_id,
        service_id=service_id,
        duration_minutes=view.duration_minutes,
        step_minutes=view.step_minutes,
        slots=[
            SlotOut(time=s.time, start_at=s.start_at, available=s.available, reason=s.reason)
            for s in view
        ],
    )


# ---------------------------------------------------------------------------
# bookings
# ---------------------------------------------------------------------------


@router.post("/bookings", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
def add_booking(
    payload: BookingCreate,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    try:
        booking = create_booking(
            db,
            shop_id=payload.shop_id,
            staff_id=payload.staff_id,
            service_id=payload.service_id,
            start=payload.start,
            customer_name=payload.customer_name,
            customer_phone=payload.customer_phone,
            source=payload.source or BookingSource.STAFF,
            actor=payload.actor or x_actor_email,
        )
    except DomainError as exc:
        raise exc.to_http_exception()
    return _to_booking_out(booking)


@router.get("/bookings", response_model=List[BookingOut])
def get_bookings(
    day: date = Query(..., alias="date"),
    range_name: str = Query(default="day", alias="range", pattern="^(day|week|month)$"),
    staff_id: Optional[int] = Query(default=None),
    shop_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    rows = list_bookings(db, day, range_name=range_name, staff_id=staff_id, shop_id=shop_id)
    return [_to_booking_out(b) for b in rows]


@router.get("/bookings/{booking_id}", response_model=BookingOut)
def read_booking(booking_id: int, db: Session = Depends(get_db)):
    try:
        booking = get_booking(db, booking_id)
    except DomainError as exc:
        raise exc.to_http_exception()
    return _to_booking_out(booking)


@router.post("/bookings/{booking_id}/status", response_model=StatusChangeOut)
def change_booking_status(
    booking_id: int,
    payload: BookingStatusUpdate,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    try:
        result = set_status(
            db,
            booking_id,
            payload.status,
            actor=payload.actor or x_actor_email,
            note=payload.note,
        )
    except DomainError as exc:
        raise exc.to_http_exception()
    return StatusChangeOut(changed=result.changed, booking=_to_booking_out(result.booking))


@router.post("/bookings/{booking_id}/cancel", response_model=StatusChangeOut)
def cancel_booking(
    booking_id: int,
    payload: Optional[BookingActionIn] = None,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    actor = (payload.actor if payload else None) or x_actor_email
    try:
        result = cancel(db, booking_id, actor=actor)
    except DomainError as exc:
        raise exc.to_http_exception()
    return StatusChangeOut(changed=result.changed, booking=_to_booking_out(result.booking))


@router.post("/bookings/{booking_id}/complete", response_model=StatusChangeOut)
def complete_booking(
    booking_id: int,
    payload: Optional[BookingActionIn] = None,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    actor = (payload.actor if payload else None) or x_actor_email
    try:
        result = complete(db, booking_id, actor=actor)
    except DomainError as exc:
        raise exc.to_http_exception()
    return StatusChangeOut(changed=result.changed, booking=_to_booking_out(result.booking))


@router.post("/bookings/{booking_id}/settle", response_model=SettleOut)
def settle_booking(
    booking_id: int,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    try:
        result = settle(db, booking_id, actor=x_actor_email)
    except DomainError as exc:
        raise exc.to_http_exception()
    return SettleOut(
        already_settled=result.already_settled,
        ledger_entry=_to_settlement_out(result.ledger_entry),
        booking=_to_booking_out(result.booking),
    )


@router.get("/bookings/{booking_id}/history", response_model=List[BookingStatusEventOut])
def booking_history(booking_id: int, db: Session = Depends(get_db)):
    try:
        rows = list_booking_events(db, booking_id)
    except DomainError as exc:
        raise exc.to_http_exception()
    return [
        BookingStatusEventOut(
            id=e.id,
            booking_id=e.booking_id,
            from_status=e.from_status,
            to_status=e.to_status,
            actor=e.actor,
            note=e.note,
            created_at=to_utc(e.created_at),
        )
        for e in rows
    ]


# ---------------------------------------------------------------------------
# availability
# ---------------------------------------------------------------------------


@router.get("/availability", response_model=AvailabilityOut)
def staff_availability(
    staff_id: int = Query(...),
    day: date = Query(..., alias="date"),
    service_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    return _availability(db, staff_id, day, service_id)


@router.get("/availability/occupied", response_model=OccupiedOut)
def staff_occupied(
    staff_id: int = Query(...),
    day: date = Query(..., alias="date"),
    db: Session = Depends(get_db),
):
    try:
        labels = occupied_slot_labels(db, staff_id, day)
    except DomainError as exc:
        raise exc.to_http_exception()
    return OccupiedOut(date=day.isoformat(), staff_id=staff_id, occupied=labels)


# ---------------------------------------------------------------------------
# reference data
# ---------------------------------------------------------------------------


@router.post("/shops", response_model=ShopOut, status_code=status.HTTP_201_CREATED)
def add_shop(payload: ShopCreate, db: Session = Depends(get_db)):
    try:
        shop = create_shop(db, payload.name, payload.platform_fee_bps, payload.staff_fee_bps)
    except DomainError as exc:
        raise exc.to_http_exception()
    return _to_shop_out(shop)


@router.get("/shops/{shop_id}", response_model=ShopOut)
def read_shop(shop_id: int, db: Session = Depends(get_db)):
    try:
        return _to_shop_out(get_shop(db, shop_id))
    except DomainError as exc:
        raise exc.to_http_exception()


@router.patch("/shops/{shop_id}/billing", response_model=ShopOut)
def patch_shop_billing(shop_id: int, payload: ShopBillingUpdate, db: Session = Depends(get_db)):
    try:
        shop = update_shop_billing(
            db,
            shop_id,
            platform_fee_bps=payload.platform_fee_bps,
            staff_fee_bps=payload.staff_fee_bps,
        )
    except DomainError as exc:
        raise exc.to_http_exception()
    return _to_shop_out(shop)


@router.post("/staff", response_model=StaffOut, status_code=status.HTTP_201_CREATED)
def add_staff(payload: StaffCreate, db: Session = Depends(get_db)):
    try:
        staff = create_staff(
            db,
            payload.shop_id,
            payload.name,
            work_start_hour=payload.work_start_hour,
            work_end_hour=payload.work_end_hour,
        )
    except DomainError as exc:
        raise exc.to_http_exception()
    return _to_staff_out(staff)


@router.get("/staff", response_model=List[StaffOut])
def get_staff_list(
    shop_id: Optional[int] = Query(default=None),
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
):
    return [_to_staff_out(s) for s in list_staff(db, shop_id=shop_id, include_inactive=include_inactive)]


@router.post("/services", response_model=ServiceOut, status_code=status.HTTP_201_CREATED)
def add_service(payload: ServiceCreate, db: Session = Depends(get_db)):
    try:
        service = create_service(
            db,
            payload.shop_id,
            payload.name,
            payload.duration_minutes,
            payload.base_price,
        )
    except DomainError as exc:
        raise exc.to_http_exception()
    return ServiceOut(
        id=service.id,
        shop_id=service.shop_id,
        name=service.name,
        duration_minutes=service.duration_minutes,
        base_price=service.base_price,
        final_price=service.base_price,
    )


@router.get("/services", response_model=List[ServiceOut])
def get_services(
    shop_id: Optional[int] = Query(default=None),
    staff_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    try:
        rows = list_services_for_staff(db, shop_id=shop_id, staff_id=staff_id)
    except DomainError as exc:
        raise exc.to_http_exception()
    return [ServiceOut(**row) for row in rows]


@router.put("/staff/{staff_id}/services/{service_id}", response_model=StaffServiceOut)
def put_staff_service(
    staff_id: int,
    service_id: int,
    payload: StaffServiceUpdate,
    db: Session = Depends(get_db),
):
    try:
        row: StaffService = set_staff_service(
            db,
            staff_id,
            service_id,
            price=payload.price,
            duration_minutes=payload.duration_minutes,
        )
    except DomainError as exc:
        raise exc.to_http_exception()
    return StaffServiceOut(
        id=row.id,
        staff_id=row.staff_id,
        service_id=row.service_id,
        price=row.price,
        duration_minutes=row.duration_minutes,
    )


@router.post(
    "/staff/{staff_id}/time-off",
    response_model=TimeOffOut,
    status_code=status.HTTP_201_CREATED,
)
def add_time_off(staff_id: int, payload: TimeOffCreate, db: Session = Depends(get_db)):
    try:
        row = create_time_off(
            db,
            staff_id,
            payload.kind,
            start_at=payload.start_at,
            end_at=payload.end_at,
            start_date=payload.start_date,
            end_date=payload.end_date,
            day=payload.date,
            start_time=payload.start_time,
            end_time=payload.end_time,
            start_minute=payload.start_minute,
            end_minute=payload.end_minute,
            note=payload.note,
        )
    except DomainError as exc:
        raise exc.to_http_exception()
    return _to_time_off_out(row)


@router.get("/staff/{staff_id}/time-off", response_model=List[TimeOffOut])
def get_time_off(
    staff_id: int,
    include_disabled: bool = Query(default=False),
    db: Session = Depends(get_db),
):
    return [_to_time_off_out(r) for r in list_time_off(db, staff_id, include_disabled=include_disabled)]


@router.delete("/staff/{staff_id}/time-off/{time_off_id}", response_model=TimeOffOut)
def remove_time_off(staff_id: int, time_off_id: int, db: Session = Depends(get_db)):
    try:
        row = disable_time_off(db, staff_id, time_off_id)
    except DomainError as exc:
        raise exc.to_http_exception()
    return _to_time_off_out(row)


@router.post("/ops/idempotency/cleanup")
def cleanup_idempotency(
    older_than_hours: Optional[int] = Query(default=None, ge=1),
    db: Session = Depends(get_db),
):
    deleted = cleanup_idempotency_records(db, older_than_hours=older_than_hours)
    return {"deleted_records": deleted}


# ---------------------------------------------------------------------------
# consumer channel
# ---------------------------------------------------------------------------


@public_router.get("/availability", response_model=AvailabilityOut)
def public_availability(
    staff_id: int = Query(...),
    day: date = Query(..., alias="date"),
    service_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    # days the consumer channel cannot book yet show as closed
    return _availability(
        db, staff_id, day, service_id, min_advance_days=int(settings.CONSUMER_MIN_ADVANCE_DAYS)
    )


@public_router.get("/services", response_model=List[ServiceOut])
def public_services(staff_id: int = Query(...), db: Session = Depends(get_db)):
    try:
        rows = list_services_for_staff(db, staff_id=staff_id)
    except DomainError as exc:
        raise exc.to_http_exception()
    return [ServiceOut(**row) for row in rows]


@public_router.post("/bookings", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
def public_add_booking(payload: PublicBookingCreate, db: Session = Depends(get_db)):
    try:
        booking = create_booking(
            db,
            shop_id=payload.shop_id,
            staff_id=payload.staff_id,
            service_id=payload.service_id,
            start=payload.start,
            customer_name=payload.customer_name,
            customer_phone=payload.customer_phone,
            source=BookingSource.CONSUMER,
        )
    except DomainError as exc:
        raise exc.to_http_exception()
    return _to_booking_out(booking)
