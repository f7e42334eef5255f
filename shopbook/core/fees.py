from dataclasses import dataclass

BPS_DENOMINATOR = 10000


@dataclass(frozen=True)
class FeeSplit:
    total_amount: int
    platform_fee_bps: int
    platform_fee_amount: int
    staff_fee_bps: int
    staff_fee_amount: int
    shop_amount: int


def _check_bps(name: str, value: int) -> int:
    bps = int(value)
    if bps < 0 or bps > BPS_DENOMINATOR:
        raise ValueError(f"{name} must be within 0..{BPS_DENOMINATOR}")
    return bps


def split_amount(total_amount: int, platform_fee_bps: int, staff_fee_bps: int) -> FeeSplit:
    """
    Split a settled amount into platform, staff and shop shares.

    Fees are floored; the shop absorbs the remainder so the three parts always
    add up to ``total_amount``.
    """
    total = int(total_amount)
    if total < 0:
        raise ValueError("total_amount must be >= 0")
    platform_bps = _check_bps("platform_fee_bps", platform_fee_bps)
    staff_bps = _check_bps("staff_fee_bps", staff_fee_bps)

    platform_fee = total * platform_bps // BPS_DENOMINATOR
    staff_fee = total * staff_bps // BPS_DENOMINATOR
    return FeeSplit(
        total_amount=total,
        platform_fee_bps=platform_bps,
        platform_fee_amount=platform_fee,
        staff_fee_bps=staff_bps,
        staff_fee_amount=staff_fee,
        shop_amount=total - platform_fee - staff_fee,
    )


def clamp_bps(value: int) -> int:
    return max(0, min(BPS_DENOMINATOR, int(value)))
