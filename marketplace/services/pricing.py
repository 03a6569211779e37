"""Duration and price calculation for reservable products.

Every price shown to a customer (product card preview, cart, reserve page) and every
amount written at checkout goes through :func:`compute_price`, so the preview and the
charge cannot drift apart.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

from marketplace.core.errors import ValidationError

CENT = Decimal("0.01")


class RateUnit(str, Enum):
    FIXED = "fixed"
    PER_HOUR = "per_hour"
    PER_DAY = "per_day"
    PER_NIGHT = "per_night"


# (singular, plural) labels for the duration count
_DURATION_LABELS = {
    RateUnit.FIXED: ("stay", "stays"),
    RateUnit.PER_HOUR: ("hour", "hours"),
    RateUnit.PER_DAY: ("day", "days"),
    RateUnit.PER_NIGHT: ("night", "nights"),
}

_RATE_LABELS = {
    RateUnit.FIXED: "fixed price",
    RateUnit.PER_HOUR: "per hour",
    RateUnit.PER_DAY: "per day",
    RateUnit.PER_NIGHT: "per night",
}


@dataclass(frozen=True)
class PriceQuote:
    duration_count: int
    duration_unit: str
    total_price: Decimal

    def as_dict(self) -> dict:
        return {
            "durationCount": self.duration_count,
            "durationUnit": self.duration_unit,
            "totalPrice": str(self.total_price),
        }


def to_money(value) -> Decimal:
    """Coerce to a cent-precision Decimal. Floats go through str() to avoid binary noise."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_rate_unit(value) -> RateUnit:
    try:
        return RateUnit(value)
    except ValueError:
        raise ValidationError(f"unknown rate unit: {value!r}", field="rate_unit")


def rate_unit_label(rate_unit) -> str:
    return _RATE_LABELS[parse_rate_unit(rate_unit)]


def duration_label(rate_unit, count: int) -> str:
    singular, plural = _DURATION_LABELS[parse_rate_unit(rate_unit)]
    return singular if count == 1 else plural


def validate_window(start: datetime, end: datetime) -> timedelta:
    """Return end - start, rejecting windows that are empty, reversed, or mix naive/aware instants."""
    if start is None or end is None:
        raise ValidationError("reservation window needs both start and end", field="window")
    if (start.tzinfo is None) != (end.tzinfo is None):
        raise ValidationError("start and end must both carry a timezone or both be naive", field="window")
    span = end - start
    if span <= timedelta(0):
        raise ValidationError("end time must be after start time", field="end")
    return span


def compute_price(rate, rate_unit, start: datetime, end: datetime) -> PriceQuote:
    """Map (rate, unit, window) to (count, label, total).

    Hourly windows bill whole hours, daily and nightly windows bill whole 24h periods,
    truncating the remainder. Every unit bills at least one period, so a 40 minute
    hourly booking is charged one hour. Fixed-rate items always count as one.
    """
    unit = parse_rate_unit(rate_unit)
    rate = to_money(rate)
    if rate < 0:
        raise ValidationError("rate must not be negative", field="rate")
    span = validate_window(start, end)

    if unit is RateUnit.PER_HOUR:
        count = max(1, span // timedelta(hours=1))
    elif unit in (RateUnit.PER_DAY, RateUnit.PER_NIGHT):
        count = max(1, span // timedelta(days=1))
    else:
        count = 1

    total = (rate * count).quantize(CENT, rounding=ROUND_HALF_UP)
    return PriceQuote(duration_count=count, duration_unit=duration_label(unit, count), total_price=total)
