"""
Tests for the duration and price calculator.
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from marketplace.core.errors import ValidationError
from marketplace.services.pricing import RateUnit, compute_price, duration_label, rate_unit_label, to_money

MON_14 = datetime(2026, 10, 19, 14, 0, tzinfo=timezone.utc)


class TestComputePrice:
    def test_nightly_under_one_day_bills_one_night(self):
        quote = compute_price(Decimal("100"), "per_night", MON_14, MON_14 + timedelta(hours=22))
        assert quote.duration_count == 1
        assert quote.duration_unit == "night"
        assert quote.total_price == Decimal("100.00")

    def test_nightly_fifty_hours_bills_two_nights(self):
        quote = compute_price(Decimal("100"), "per_night", MON_14, MON_14 + timedelta(hours=50))
        assert quote.duration_count == 2
        assert quote.duration_unit == "nights"
        assert quote.total_price == Decimal("200.00")

    def test_half_hour_hourly_booking_bills_one_hour(self):
        quote = compute_price(Decimal("15"), RateUnit.PER_HOUR, MON_14, MON_14 + timedelta(minutes=30))
        assert quote.duration_count == 1
        assert quote.duration_unit == "hour"
        assert quote.total_price == Decimal("15.00")

    def test_hourly_truncates_partial_hours(self):
        quote = compute_price(Decimal("40"), "per_hour", MON_14, MON_14 + timedelta(hours=3, minutes=59))
        assert quote.duration_count == 3
        assert quote.total_price == Decimal("120.00")

    def test_daily_counts_whole_days(self):
        quote = compute_price(Decimal("180"), "per_day", MON_14, MON_14 + timedelta(days=3, hours=5))
        assert quote.duration_count == 3
        assert quote.duration_unit == "days"
        assert quote.total_price == Decimal("540.00")

    def test_fixed_rate_ignores_window(self):
        quote = compute_price(Decimal("25"), "fixed", MON_14, MON_14 + timedelta(days=9))
        assert quote.duration_count == 1
        assert quote.duration_unit == "stay"
        assert quote.total_price == Decimal("25.00")

    @pytest.mark.parametrize("unit", ["fixed", "per_hour", "per_day", "per_night"])
    @pytest.mark.parametrize("minutes", [1, 59, 61, 60 * 24 - 1, 60 * 24 * 3 + 7])
    def test_never_charges_less_than_one_unit(self, unit, minutes):
        rate = Decimal("12.34")
        quote = compute_price(rate, unit, MON_14, MON_14 + timedelta(minutes=minutes))
        assert quote.duration_count >= 1
        assert quote.total_price >= rate

    def test_money_stays_decimal_without_drift(self):
        quote = compute_price(0.1, "per_hour", MON_14, MON_14 + timedelta(hours=3))
        assert quote.total_price == Decimal("0.30")

    def test_end_before_start_rejected(self):
        with pytest.raises(ValidationError) as exc:
            compute_price(Decimal("100"), "per_night", MON_14, MON_14 - timedelta(hours=1))
        assert exc.value.field == "end"

    def test_empty_window_rejected(self):
        with pytest.raises(ValidationError):
            compute_price(Decimal("100"), "per_hour", MON_14, MON_14)

    def test_mixed_naive_and_aware_rejected(self):
        with pytest.raises(ValidationError):
            compute_price(Decimal("100"), "per_hour", MON_14, datetime(2026, 10, 20, 10, 0))

    def test_unknown_rate_unit_rejected(self):
        with pytest.raises(ValidationError) as exc:
            compute_price(Decimal("100"), "per_week", MON_14, MON_14 + timedelta(days=8))
        assert exc.value.field == "rate_unit"

    def test_negative_rate_rejected(self):
        with pytest.raises(ValidationError):
            compute_price(Decimal("-1"), "fixed", MON_14, MON_14 + timedelta(hours=1))


class TestLabels:
    def test_pluralisation(self):
        assert duration_label("per_hour", 1) == "hour"
        assert duration_label("per_hour", 2) == "hours"
        assert duration_label("per_night", 1) == "night"
        assert duration_label("fixed", 3) == "stays"

    def test_rate_unit_label(self):
        assert rate_unit_label("per_night") == "per night"
        assert rate_unit_label(RateUnit.FIXED) == "fixed price"

    def test_to_money_rounds_half_up(self):
        assert to_money("2.345") == Decimal("2.35")
        assert to_money(1.005) == Decimal("1.01")
