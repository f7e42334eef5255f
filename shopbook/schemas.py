from datetime import datetime

from pydantic import BaseModel, Field, validator


class BookingCreate(BaseModel):
    shop_id: int = Field(gt=0)
    staff_id: int = Field(gt=0)
    service_id: int = Field(gt=0)
    # ISO-8601 string (offset optional) or epoch milliseconds
    start: str | int
    customer_name: str = Field(min_length=1, max_length=120)
    customer_phone: str | None = Field(default=None, max_length=40)
    source: str | None = Field(default=None, max_length=20)
    actor: str | None = Field(default=None, max_length=120)

    @validator("customer_name")
    @classmethod
    def validate_customer_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("customer_name cannot be blank")
        return cleaned


class PublicBookingCreate(BaseModel):
    shop_id: int = Field(gt=0)
    staff_id: int = Field(gt=0)
    service_id: int = Field(gt=0)
    start: str | int
    customer_name: str = Field(min_length=1, max_length=120)
    customer_phone: str | None = Field(default=None, max_length=40)


class BookingOut(BaseModel):
    id: int
    shop_id: int
    staff_id: int
    service_id: int
    start_at: datetime
    end_at: datetime
    start_local: str
    duration_minutes: int
    status: str
    occupies_slot: bool
    source: str
    customer_name: str
    customer_phone: str | None = None
    price: int
    completed_at: datetime | None = None
    settlement_id: int | None = None
    created_at: datetime


class BookingStatusUpdate(BaseModel):
    status: str = Field(min_length=1, max_length=32)
    actor: str | None = Field(default=None, max_length=120)
    note: str | None = Field(default=None, max_length=300)


class BookingActionIn(BaseModel):
    actor: str | None = Field(default=None, max_length=120)


class StatusChangeOut(BaseModel):
    changed: bool
    booking: BookingOut


class BookingStatusEventOut(BaseModel):
    id: int
    booking_id: int
    from_status: str | None = None
    to_status: str
    actor: str | None = None
    note: str | None = None
    created_at: datetime


class SettlementOut(BaseModel):
    id: int
    booking_id: int
    total_amount: int
    platform_fee_bps: int
    platform_fee_amount: int
    staff_fee_bps: int
    staff_fee_amount: int
    shop_amount: int
    created_at: datetime


class SettleOut(BaseModel):
    already_settled: bool
    ledger_entry: SettlementOut
    booking: BookingOut


class SlotOut(BaseModel):
    time: str
    start_at: datetime
    available: bool
    reason: str | None = None


class AvailabilityOut(BaseModel):
    date: str
    staff_id: int
    service_id: int | None = None
    duration_minutes: int
    step_minutes: int
    slots: list[SlotOut]


class OccupiedOut(BaseModel):
    date: str
    staff_id: int
    occupied: list[str]


class ShopCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    platform_fee_bps: int = 0
    staff_fee_bps: int = 0


class ShopBillingUpdate(BaseModel):
    platform_fee_bps: int | None = None
    staff_fee_bps: int | None = None


class ShopOut(BaseModel):
    id: int
    name: str
    platform_fee_bps: int
    staff_fee_bps: int


class StaffCreate(BaseModel):
    shop_id: int = Field(gt=0)
    name: str = Field(min_length=1, max_length=120)
    work_start_hour: int | None = Field(default=None, ge=0, le=24)
    work_end_hour: int | None = Field(default=None, ge=0, le=24)


class StaffOut(BaseModel):
    id: int
    shop_id: int
    name: str
    work_start_hour: int | None = None
    work_end_hour: int | None = None
    is_active: bool


class ServiceCreate(BaseModel):
    shop_id: int = Field(gt=0)
    name: str = Field(min_length=1, max_length=120)
    duration_minutes: int = Field(gt=0, le=24 * 60)
    base_price: int = Field(ge=0)


class ServiceOut(BaseModel):
    id: int
    shop_id: int
    name: str
    duration_minutes: int
    base_price: int
    final_price: int | None = None


class StaffServiceUpdate(BaseModel):
    price: int | None = Field(default=None, ge=0)
    duration_minutes: int | None = Field(default=None, gt=0, le=24 * 60)


class StaffServiceOut(BaseModel):
    id: int
    staff_id: int
    service_id: int
    price: int | None = None
    duration_minutes: int | None = None


class TimeOffCreate(BaseModel):
    kind: str = Field(min_length=1, max_length=32)
    start_at: str | int | None = None
    end_at: str | int | None = None
    start_date: str | None = None
    end_date: str | None = None
    date: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    start_minute: int | None = Field(default=None, ge=0, le=24 * 60)
    end_minute: int | None = Field(default=None, ge=0, le=24 * 60)
    note: str | None = Field(default=None, max_length=300)

    @validator("kind")
    @classmethod
    def normalize_kind(cls, value: str) -> str:
        return value.strip().upper()


class TimeOffOut(BaseModel):
    id: int
    staff_id: int
    kind: str
    start_at: datetime | None = None
    end_at: datetime | None = None
    start_minute: int | None = None
    end_minute: int | None = None
    enabled: bool
    note: str | None = None
