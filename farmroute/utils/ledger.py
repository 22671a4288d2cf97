"""Revenue split and driver fee arithmetic.

Amounts travel through the engine as integer cents (``*_minor``). The
Decimal-returning helpers are the major-unit view of the same numbers and
are what callers outside the persistence layer should compare against.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from farmroute.errors import ValidationError

FARMER_SHARE_BPS = 8800
LEAD_FARMER_SHARE_BPS = 200
PLATFORM_FEE_BPS = 1000
FLAT_DELIVERY_FEE = Decimal("7.50")

_CENT = Decimal("0.01")


def _to_decimal(amount) -> Decimal:
    if isinstance(amount, float):
        amount = str(amount)
    try:
        value = Decimal(amount if amount is not None else 0)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError("amount must be numeric", {"amount": str(amount)}) from exc
    if not value.is_finite():
        raise ValidationError("amount must be finite", {"amount": str(amount)})
    return value


def money_major_to_minor(amount) -> int:
    value = _to_decimal(amount)
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def money_minor_to_major(minor) -> float:
    try:
        parsed = Decimal(int(minor or 0))
    except (TypeError, ValueError):
        parsed = Decimal("0")
    return float((parsed / Decimal("100")).quantize(_CENT, rounding=ROUND_HALF_UP))


def minor_to_decimal(minor: int) -> Decimal:
    return (Decimal(int(minor)) / Decimal("100")).quantize(_CENT)


def _bps_minor_half_up(amount_minor: int, bps: int) -> int:
    raw = (Decimal(int(amount_minor)) * Decimal(int(bps))) / Decimal("10000")
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def split_revenue_minor(
    subtotal_minor: int,
    *,
    farmer_bps: int = FARMER_SHARE_BPS,
    lead_farmer_bps: int = LEAD_FARMER_SHARE_BPS,
) -> dict:
    subtotal = int(subtotal_minor)
    if subtotal < 0:
        raise ValidationError("subtotal must not be negative", {"subtotal_minor": subtotal})
    if farmer_bps < 0 or lead_farmer_bps < 0 or farmer_bps + lead_farmer_bps > 10000:
        raise ValidationError(
            "share rates out of range",
            {"farmer_bps": farmer_bps, "lead_farmer_bps": lead_farmer_bps},
        )
    farmer = _bps_minor_half_up(subtotal, farmer_bps)
    lead = _bps_minor_half_up(subtotal, lead_farmer_bps)
    # platform takes the rounding remainder so the parts sum to the subtotal
    platform = subtotal - farmer - lead
    if platform < 0:
        farmer += platform
        platform = 0
    return {
        "farmer_share": farmer,
        "lead_farmer_share": lead,
        "platform_fee": platform,
    }


def split_revenue(subtotal, **rates) -> dict:
    """Split a product subtotal (major units) into the three shares.

    Farmer and lead farmer shares are rounded half-up to the cent; the
    platform fee is whatever remains, so the three always add up to the
    subtotal exactly.
    """
    subtotal_minor = money_major_to_minor(subtotal)
    parts = split_revenue_minor(subtotal_minor, **rates)
    return {key: minor_to_decimal(value) for key, value in parts.items()}


def driver_payout_minor(delivery_count: int, *, flat_fee=FLAT_DELIVERY_FEE) -> int:
    count = int(delivery_count)
    if count < 0:
        raise ValidationError("delivery count must not be negative", {"delivery_count": count})
    # per-stop rounding happens before summation
    return count * money_major_to_minor(flat_fee)


def driver_payout(delivery_count: int, *, flat_fee=FLAT_DELIVERY_FEE) -> Decimal:
    return minor_to_decimal(driver_payout_minor(delivery_count, flat_fee=flat_fee))
