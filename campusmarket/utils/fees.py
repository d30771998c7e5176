from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

from flask import current_app, has_app_context

DEFAULTS = {
    "RIDER_FEE": 560.0,
    "PLATFORM_COMMISSION_RATE": 0.05,
    "PLATFORM_DELIVERY_CUT": 240.0,
    "DEFAULT_DELIVERY_FEE": 800.0,
    "DISPUTE_FEE_RATE": 0.10,
}


def _setting(key: str) -> float:
    if has_app_context():
        raw = current_app.config.get(key, DEFAULTS[key])
    else:
        raw = DEFAULTS[key]
    try:
        return float(raw)
    except Exception:
        return float(DEFAULTS[key])


def money(amount: float | Decimal | int | None) -> float:
    """Round a major-unit amount to two decimals, half up."""
    try:
        parsed = Decimal(str(amount or 0))
    except Exception:
        parsed = Decimal("0")
    return float(parsed.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def money_major_to_minor(amount: float | Decimal | int | None) -> int:
    try:
        parsed = Decimal(str(amount or 0))
    except Exception:
        parsed = Decimal("0")
    return int((parsed * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def money_minor_to_major(minor: int | None) -> float:
    parsed = Decimal(int(minor or 0))
    return float((parsed / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def rider_fee() -> float:
    return money(_setting("RIDER_FEE"))


def default_delivery_fee() -> float:
    return money(_setting("DEFAULT_DELIVERY_FEE"))


def dispute_fee_rate() -> float:
    return _setting("DISPUTE_FEE_RATE")


def calculate_fees(subtotal: float, delivery_fee: float | None = None) -> dict:
    """Fee breakdown for one checkout or one seller's slice of it."""
    sub_minor = money_major_to_minor(subtotal)
    delivery_minor = money_major_to_minor(default_delivery_fee() if delivery_fee is None else delivery_fee)
    rate = Decimal(str(_setting("PLATFORM_COMMISSION_RATE")))
    product_fee_minor = int((Decimal(sub_minor) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    cut_minor = money_major_to_minor(_setting("PLATFORM_DELIVERY_CUT"))
    return {
        "subtotal": money_minor_to_major(sub_minor),
        "delivery_fee": money_minor_to_major(delivery_minor),
        "platform_fee_from_products": money_minor_to_major(product_fee_minor),
        "platform_total": money_minor_to_major(product_fee_minor + cut_minor),
        "rider_share": rider_fee(),
        "seller_share": money_minor_to_major(sub_minor - product_fee_minor),
        "total_amount": money_minor_to_major(sub_minor + delivery_minor),
    }


def apportion_delivery_fee(delivery_fee: float, seller_subtotal: float, checkout_subtotal: float) -> float:
    """Seller's share of the checkout delivery fee, rounded to a whole unit."""
    if float(checkout_subtotal or 0) <= 0:
        return money(delivery_fee)
    proportion = Decimal(str(seller_subtotal)) / Decimal(str(checkout_subtotal))
    share = (Decimal(str(delivery_fee)) * proportion).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return float(share)


def seller_net_share(total_amount: float, platform_commission: float, *, with_rider: bool = True) -> float:
    """Seller proceeds after commission and, when a rider delivers, the rider fee."""
    net_minor = money_major_to_minor(total_amount) - money_major_to_minor(platform_commission)
    if with_rider:
        net_minor -= money_major_to_minor(rider_fee())
    return money_minor_to_major(max(0, net_minor))


def dispute_processing_fee(refund_amount: float) -> tuple[float, float]:
    """Returns (fee, net_refund) for a refund, fee rounded to two decimals."""
    refund_minor = money_major_to_minor(refund_amount)
    rate = Decimal(str(dispute_fee_rate()))
    fee_minor = int((Decimal(refund_minor) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return money_minor_to_major(fee_minor), money_minor_to_major(refund_minor - fee_minor)
