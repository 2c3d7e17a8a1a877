"""Booking flow: quote a slot for a user and claim it.

Glues together the tariff engine, promotion codes, the pricing calculator
and the reservation state machine. Quotes are read-only; ``book`` runs in
the caller's transaction so the promo redemption and the reservation
insert commit or roll back together.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from matchpoint.config import settings
from matchpoint.errors import NotFound, PermissionDenied, ValidationFailed
from matchpoint.models.court import Court
from matchpoint.models.enums import PaymentMethod
from matchpoint.models.reservation import Reservation
from matchpoint.models.user import User
from matchpoint.services.pricing import PriceBreakdown, price
from matchpoint.services.promo_service import resolve_promo
from matchpoint.services.reservation_service import StaffOverride, create_reservation
from matchpoint.services.tariff_service import TariffEvaluation, find_applicable_tariff

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Quote:
    court_id: uuid.UUID
    starts_at: datetime
    duration_minutes: int
    tariff: TariffEvaluation
    breakdown: PriceBreakdown
    promo_code: str | None = None

    @property
    def amount_cents(self) -> int:
        return self.breakdown.final_cents


@dataclass(frozen=True)
class BookingResult:
    reservation: Reservation
    quote: Quote


async def _load(db: AsyncSession, court_id: uuid.UUID, user_id: uuid.UUID) -> tuple[Court, User]:
    court = await db.get(Court, court_id)
    if court is None:
        raise NotFound("Court not found", court_id=str(court_id))
    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        raise NotFound("User not found", user_id=str(user_id))
    return court, user


async def quote(
    db: AsyncSession,
    *,
    court_id: uuid.UUID,
    user_id: uuid.UUID,
    starts_at: datetime,
    duration_minutes: int,
    promo_code: str | None = None,
    override_delta_cents: int = 0,
    redeem_promo: bool = False,
) -> Quote:
    """Price a prospective booking without claiming the slot."""
    if starts_at.tzinfo is None:
        raise ValidationFailed("start time must be timezone-aware")
    court, user = await _load(db, court_id, user_id)
    local_day = starts_at.astimezone(ZoneInfo(settings.timezone)).date()
    evaluation = await find_applicable_tariff(
        db, user.id, court.id, user.age_on(local_day), at=starts_at
    )
    promo = await resolve_promo(db, promo_code, at=datetime.now(timezone.utc), redeem=redeem_promo)
    breakdown = price(
        court.hourly_rate_cents,
        duration_minutes,
        evaluation.discount_percent,
        promo,
        override_delta_cents,
    )
    return Quote(
        court_id=court.id,
        starts_at=starts_at,
        duration_minutes=duration_minutes,
        tariff=evaluation,
        breakdown=breakdown,
        promo_code=promo.code,
    )


async def book(
    db: AsyncSession,
    *,
    court_id: uuid.UUID,
    user_id: uuid.UUID,
    starts_at: datetime,
    duration_minutes: int,
    actor: User,
    promo_code: str | None = None,
    payment_method: PaymentMethod | None = None,
    override_delta_cents: int | None = None,
    override_reason: str | None = None,
    now: datetime | None = None,
) -> BookingResult:
    """Quote and create a PENDING reservation in one transaction.

    Players may only book for themselves; staff may book for anyone and
    adjust the price with a reasoned override.
    """
    if actor.id != user_id and not actor.is_staff:
        raise PermissionDenied("Only staff can book on behalf of another user")

    override = None
    if override_delta_cents:
        if not actor.is_staff:
            raise PermissionDenied("Only staff can override prices")
        if not override_reason or not override_reason.strip():
            raise ValidationFailed("A price override requires a reason")
        override = StaffOverride(
            delta_cents=override_delta_cents, reason=override_reason.strip(), actor=actor.id
        )

    if payment_method == PaymentMethod.COURTESY and not actor.is_staff:
        raise PermissionDenied("Only staff can grant courtesy bookings")

    q = await quote(
        db,
        court_id=court_id,
        user_id=user_id,
        starts_at=starts_at,
        duration_minutes=duration_minutes,
        promo_code=promo_code,
        override_delta_cents=override.delta_cents if override else 0,
        redeem_promo=True,
    )
    # Courtesy bookings are free by definition
    amount = 0 if payment_method == PaymentMethod.COURTESY else q.amount_cents

    reservation = await create_reservation(
        db,
        court_id=court_id,
        user_id=user_id,
        starts_at=starts_at,
        duration_minutes=duration_minutes,
        amount_cents=amount,
        payment_method=payment_method,
        applied_tariff_id=q.tariff.applied.id if q.tariff.applied else None,
        promo_code=q.promo_code,
        override=override,
        now=now,
    )
    logger.info(
        "Booked reservation %s for user %s at %d cents (tariff=%s, promo=%s)",
        reservation.id,
        user_id,
        amount,
        q.tariff.applied.segment if q.tariff.applied else None,
        q.promo_code,
    )
    return BookingResult(reservation=reservation, quote=q)
