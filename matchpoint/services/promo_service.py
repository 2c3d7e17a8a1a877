"""Promotion code lookup and redemption."""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from matchpoint.errors import ValidationFailed
from matchpoint.models.enums import PromoKind
from matchpoint.models.promotion import PromoCode
from matchpoint.services.pricing import NO_PROMO, PromoDiscount

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return code.strip().upper()


def is_redeemable(promo: PromoCode, at: datetime) -> bool:
    if not promo.is_active:
        return False
    if promo.valid_from is not None and at < promo.valid_from:
        return False
    if promo.valid_until is not None and at > promo.valid_until:
        return False
    return promo.max_redemptions is None or promo.redemptions < promo.max_redemptions


async def resolve_promo(
    db: AsyncSession,
    code: str | None,
    at: datetime | None = None,
    redeem: bool = False,
) -> PromoDiscount:
    """Turn a user-entered code into a discount.

    With ``redeem=True`` the row is locked and its redemption counter
    incremented inside the caller's transaction, so a capped code can
    never be over-redeemed.

    Raises:
        ValidationFailed: unknown, inactive, out-of-validity or exhausted code.
    """
    if not code:
        return NO_PROMO
    at = at or datetime.now(timezone.utc)
    normalized = normalize_code(code)

    query = select(PromoCode).where(PromoCode.code == normalized)
    if redeem:
        query = query.with_for_update()
    result = await db.execute(query)
    promo = result.scalar_one_or_none()
    if promo is None or not is_redeemable(promo, at):
        raise ValidationFailed("Promotion code is not valid", code=normalized)

    if redeem:
        promo.redemptions += 1
        await db.flush()
        logger.info("Redeemed promo %s (%d/%s)", normalized, promo.redemptions, promo.max_redemptions or "∞")

    return PromoDiscount(kind=promo.kind, value=promo.value, code=normalized)


async def create_promo(
    db: AsyncSession,
    *,
    code: str,
    kind: PromoKind,
    value: Decimal,
    valid_from: datetime | None = None,
    valid_until: datetime | None = None,
    max_redemptions: int | None = None,
) -> PromoCode:
    if value < 0 or (kind == PromoKind.PERCENT and value > 100):
        raise ValidationFailed("Invalid promotion value", value=str(value))
    promo = PromoCode(
        code=normalize_code(code),
        kind=kind,
        value=value,
        valid_from=valid_from,
        valid_until=valid_until,
        max_redemptions=max_redemptions,
        is_active=True,
        redemptions=0,
    )
    db.add(promo)
    await db.flush()
    return promo
