from decimal import Decimal, ROUND_HALF_UP

from marketplace.core.errors import ValidationError
from marketplace.services.pricing import CENT, to_money


def validate_fee_rate(rate) -> Decimal:
    rate = Decimal(str(rate)) if isinstance(rate, float) else Decimal(rate)
    if rate < 0 or rate >= 1:
        raise ValidationError("platform fee rate must be in [0, 1)", field="rate")
    return rate


def platform_fee(subtotal, rate) -> Decimal:
    """Fee retained by the marketplace on one vendor-order subtotal."""
    subtotal = to_money(subtotal)
    if subtotal < 0:
        raise ValidationError("subtotal must not be negative", field="subtotal")
    return (subtotal * validate_fee_rate(rate)).quantize(CENT, rounding=ROUND_HALF_UP)


def grand_total(subtotal, rate) -> Decimal:
    return to_money(subtotal) + platform_fee(subtotal, rate)
