"""Pricing calculator: base rate, tariff, promotion and staff override.

All arithmetic runs on exact ``Decimal`` values in cents. The only
rounding step is the final one (half-up to whole cents).
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from matchpoint.errors import ValidationFailed
from matchpoint.models.enums import PromoKind

_HUNDRED = Decimal(100)
_ZERO = Decimal(0)


@dataclass(frozen=True)
class PromoDiscount:
    """A resolved promotion: ``value`` is cents for FLAT, percent for PERCENT."""

    kind: PromoKind
    value: Decimal
    code: str | None = None

    def amount_off(self, subtotal: Decimal) -> Decimal:
        if self.kind == PromoKind.PERCENT:
            return subtotal * self.value / _HUNDRED
        return self.value


NO_PROMO = PromoDiscount(kind=PromoKind.FLAT, value=_ZERO)


@dataclass(frozen=True)
class PriceBreakdown:
    """Every intermediate step of a price calculation, unrounded except ``final_cents``."""

    base: Decimal
    after_tariff: Decimal
    after_promo: Decimal
    override_delta_cents: int
    final_cents: int

    @property
    def tariff_discount(self) -> Decimal:
        return self.base - self.after_tariff

    @property
    def promo_discount(self) -> Decimal:
        return self.after_tariff - self.after_promo


def price(
    hourly_rate_cents: int,
    duration_minutes: int,
    tariff_discount_percent: Decimal | int = 0,
    promo: PromoDiscount = NO_PROMO,
    staff_override_delta_cents: int = 0,
) -> PriceBreakdown:
    """Compute the amount owed for one booking.

    >>> price(2000, 90, 40).final_cents
    1800
    """
    if duration_minutes <= 0:
        raise ValidationFailed("Duration must be positive", duration_minutes=duration_minutes)
    discount = Decimal(tariff_discount_percent)
    if not _ZERO <= discount <= _HUNDRED:
        raise ValidationFailed("Tariff discount must be between 0 and 100", discount=str(discount))
    if promo.value < _ZERO:
        raise ValidationFailed("Promotion value cannot be negative")

    base = Decimal(hourly_rate_cents) * Decimal(duration_minutes) / Decimal(60)
    after_tariff = base * (_HUNDRED - discount) / _HUNDRED
    after_promo = max(_ZERO, after_tariff - promo.amount_off(after_tariff))
    final = max(_ZERO, after_promo + Decimal(staff_override_delta_cents))

    return PriceBreakdown(
        base=base,
        after_tariff=after_tariff,
        after_promo=after_promo,
        override_delta_cents=staff_override_delta_cents,
        final_cents=int(final.quantize(Decimal(1), rounding=ROUND_HALF_UP)),
    )


def format_cents(amount_cents: int) -> str:
    """Render cents as a euro string for logs and audit summaries."""
    sign = "-" if amount_cents < 0 else ""
    whole, cents = divmod(abs(amount_cents), 100)
    return f"{sign}€{whole}.{cents:02d}"
