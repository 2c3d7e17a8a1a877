"""Tests for the pricing calculator: exact cents, single final rounding."""

from decimal import Decimal

import pytest

from matchpoint.errors import ValidationFailed
from matchpoint.models.enums import PromoKind
from matchpoint.services.pricing import NO_PROMO, PromoDiscount, format_cents, price


class TestPrice:
    """Test base rate, tariff, promotion and override composition."""

    def test_tariff_discount_on_ninety_minutes(self):
        """€20/h for 90 min at 40% off is €18.00."""
        breakdown = price(2000, 90, 40)
        assert breakdown.base == Decimal(3000)
        assert breakdown.after_tariff == Decimal(1800)
        assert breakdown.final_cents == 1800

    def test_no_discounts(self):
        assert price(2000, 60).final_cents == 2000

    def test_flat_promo_after_tariff(self):
        promo = PromoDiscount(kind=PromoKind.FLAT, value=Decimal(500))
        breakdown = price(2000, 60, 50, promo)
        assert breakdown.after_tariff == Decimal(1000)
        assert breakdown.promo_discount == Decimal(500)
        assert breakdown.final_cents == 500

    def test_percent_promo_applies_to_discounted_amount(self):
        promo = PromoDiscount(kind=PromoKind.PERCENT, value=Decimal(10))
        assert price(2000, 60, 50, promo).final_cents == 900

    def test_promo_never_goes_negative(self):
        promo = PromoDiscount(kind=PromoKind.FLAT, value=Decimal(5000))
        breakdown = price(2000, 60, 0, promo)
        assert breakdown.after_promo == Decimal(0)
        assert breakdown.final_cents == 0

    def test_override_added_after_promo(self):
        assert price(2000, 60, 0, NO_PROMO, -300).final_cents == 1700
        assert price(2000, 60, 0, NO_PROMO, 250).final_cents == 2250

    def test_negative_override_clamped_to_zero(self):
        assert price(2000, 60, 0, NO_PROMO, -5000).final_cents == 0

    def test_rounding_only_at_the_end(self):
        """1999 cents/h for 45 min is 1499.25; 33% off is 1004.4975 -> 1004."""
        breakdown = price(1999, 45, 33)
        assert breakdown.base == Decimal("1499.25")
        assert breakdown.final_cents == 1004

    def test_half_cent_rounds_up(self):
        # 1001 cents/h for 30 min = 500.5 cents
        assert price(1001, 30).final_cents == 501

    def test_invalid_duration(self):
        with pytest.raises(ValidationFailed):
            price(2000, 0)

    def test_discount_out_of_range(self):
        with pytest.raises(ValidationFailed):
            price(2000, 60, 101)


class TestFormatCents:
    """Test euro rendering for logs."""

    def test_positive(self):
        assert format_cents(1800) == "€18.00"

    def test_negative(self):
        assert format_cents(-305) == "-€3.05"
