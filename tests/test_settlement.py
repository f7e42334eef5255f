from datetime import datetime, timezone

import pytest

from shopbook.bookings import cancel, create_booking, settle
from shopbook.core.fees import split_amount
from shopbook.errors import NotFound, StatusConflict, ValidationFailed
from shopbook.services import update_shop_billing

NOW = datetime(2030, 3, 1, 8, 0, tzinfo=timezone.utc)


def make_booking(db, setup, start="2030-03-12T14:00:00", service_id=None):
    return create_booking(
        db,
        shop_id=setup.shop_id,
        staff_id=setup.staff_id,
        service_id=service_id or setup.haircut_id,
        start=start,
        customer_name="Ola",
        now=NOW,
    )


@pytest.mark.parametrize(
    "total,platform_bps,staff_bps",
    [
        (10000, 1000, 4000),
        (9999, 333, 3333),
        (1, 9999, 1),
        (0, 5000, 5000),
        (123457, 0, 10000),
        (777, 10000, 0),
    ],
)
def test_split_always_sums_to_total(total, platform_bps, staff_bps):
    split = split_amount(total, platform_bps, staff_bps)
    assert split.platform_fee_amount + split.staff_fee_amount + split.shop_amount == total
    assert split.platform_fee_amount == total * platform_bps // 10000
    assert split.staff_fee_amount == total * staff_bps // 10000


def test_split_rejects_out_of_range():
    with pytest.raises(ValueError):
        split_amount(100, -1, 0)
    with pytest.raises(ValueError):
        split_amount(100, 0, 10001)
    with pytest.raises(ValueError):
        split_amount(-5, 0, 0)


def test_settle_is_idempotent(db, shop_setup):
    booking = make_booking(db, shop_setup)

    first = settle(db, booking.id, now=NOW)
    assert first.already_settled is False
    assert first.booking.status == "COMPLETED"
    assert first.booking.completed_at is not None
    assert first.booking.settlement_id == first.ledger_entry.id

    entry = first.ledger_entry
    assert entry.total_amount == 10000
    assert entry.platform_fee_amount == 1000
    assert entry.staff_fee_amount == 4000
    assert entry.shop_amount == 5000

    second = settle(db, booking.id, now=NOW)
    assert second.already_settled is True
    assert second.ledger_entry.id == entry.id
    assert second.ledger_entry.shop_amount == entry.shop_amount


def test_settlement_snapshots_rates(db, shop_setup):
    booking = make_booking(db, shop_setup)
    settle(db, booking.id, now=NOW)

    update_shop_billing(db, shop_setup.shop_id, platform_fee_bps=0, staff_fee_bps=0)
    replay = settle(db, booking.id, now=NOW)
    assert replay.ledger_entry.platform_fee_bps == 1000
    assert replay.ledger_entry.staff_fee_bps == 4000


def test_settle_rejects_cancelled_booking(db, shop_setup):
    booking = make_booking(db, shop_setup)
    cancel(db, booking.id, now=NOW)
    with pytest.raises(StatusConflict):
        settle(db, booking.id, now=NOW)


def test_settle_missing_booking(db, shop_setup):
    with pytest.raises(NotFound):
        settle(db, 4242, now=NOW)


def test_billing_update_is_clamped_and_validated(db, shop_setup):
    shop = update_shop_billing(db, shop_setup.shop_id, platform_fee_bps=-50)
    assert shop.platform_fee_bps == 0
    assert shop.staff_fee_bps == 4000

    with pytest.raises(ValidationFailed):
        update_shop_billing(db, shop_setup.shop_id, platform_fee_bps=7000)


def test_settle_over_http(client, shop_setup):
    created = client.post(
        "/api/bookings",
        json={
            "shop_id": shop_setup.shop_id,
            "staff_id": shop_setup.staff_id,
            "service_id": shop_setup.colour_id,
            "start": "2030-03-12T10:00:00",
            "customer_name": "Ola",
        },
    ).json()

    first = client.post(f"/api/bookings/{created['id']}/settle")
    assert first.status_code == 200
    body = first.json()
    assert body["already_settled"] is False
    ledger = body["ledger_entry"]
    assert ledger["total_amount"] == 25000
    assert ledger["platform_fee_amount"] + ledger["staff_fee_amount"] + ledger["shop_amount"] == 25000

    second = client.post(f"/api/bookings/{created['id']}/settle")
    assert second.json()["already_settled"] is True
    assert second.json()["ledger_entry"]["id"] == ledger["id"]

    refused = client.post(f"/api/bookings/{created['id']}/cancel")
    assert refused.status_code == 409
