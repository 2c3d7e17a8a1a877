"""Gateway callbacks: finalise PENDING ledger entries from Stripe and Bizum."""

import logging
import uuid

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from matchpoint.errors import NotFound, ValidationFailed
from matchpoint.models.enums import LedgerDirection, PaymentMethod
from matchpoint.models.ledger import LedgerEntry
from matchpoint.payments import bizum
from matchpoint.payments.channels import get_channel
from matchpoint.payments.settlement import finalize_entry, find_entry_by_reference, get_entry

logger = logging.getLogger(__name__)


def _metadata_entry_id(obj) -> uuid.UUID | None:
    metadata = getattr(obj, "metadata", None) or {}
    raw = metadata.get("ledger_entry_id")
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        logger.warning("Malformed ledger_entry_id %r in Stripe metadata", raw)
        return None


async def _resolve_entry(
    db: AsyncSession, obj, direction: LedgerDirection
) -> LedgerEntry | None:
    """Find the ledger entry a Stripe object belongs to.

    Metadata is authoritative; the external reference is a fallback for
    objects created before the entry id was stored.
    """
    entry_id = _metadata_entry_id(obj)
    if entry_id is not None:
        try:
            return await get_entry(db, entry_id)
        except NotFound:
            logger.warning("Stripe object %s references unknown ledger entry %s", obj.id, entry_id)
            return None
    return await find_entry_by_reference(db, obj.id, direction)


async def handle_payment_intent_succeeded(db: AsyncSession, event: stripe.Event) -> None:
    """Handle payment_intent.succeeded: settle the CARD charge."""
    intent = event.data.object
    entry = await _resolve_entry(db, intent, LedgerDirection.CHARGE)
    if entry is None:
        logger.warning("No ledger entry found for PaymentIntent %s", intent.id)
        return
    await finalize_entry(db, entry.id, succeeded=True, external_reference=intent.id)
    logger.info("PaymentIntent %s succeeded for ledger entry %s", intent.id, entry.id)


async def handle_payment_intent_failed(db: AsyncSession, event: stripe.Event) -> None:
    """Handle payment_intent.payment_failed: cancel the intent and fail the CARD charge.

    A failed attempt leaves the intent payable with another card, so it is
    cancelled before the entry is marked FAILED. The cancellation happens
    before the first query, while the session holds no connection.
    """
    intent = event.data.object
    if _metadata_entry_id(intent) is None:
        logger.warning("Failed PaymentIntent %s has no ledger entry id; left to expiry", intent.id)
        return
    if not await get_channel(PaymentMethod.CARD).void_charge(intent.id):
        logger.info("PaymentIntent %s could not be cancelled; charge left pending", intent.id)
        return
    entry = await _resolve_entry(db, intent, LedgerDirection.CHARGE)
    if entry is None:
        logger.warning("No ledger entry found for failed PaymentIntent %s", intent.id)
        return
    error = getattr(intent, "last_payment_error", None)
    reason = getattr(error, "message", None) or "Card payment failed"
    await finalize_entry(db, entry.id, succeeded=False, failure_reason=reason)
    logger.info("PaymentIntent %s failed for ledger entry %s: %s", intent.id, entry.id, reason)


async def handle_payment_intent_canceled(db: AsyncSession, event: stripe.Event) -> None:
    """Handle payment_intent.canceled: an intent cancelled here or from the dashboard."""
    intent = event.data.object
    entry = await _resolve_entry(db, intent, LedgerDirection.CHARGE)
    if entry is None:
        logger.warning("No ledger entry found for cancelled PaymentIntent %s", intent.id)
        return
    await finalize_entry(db, entry.id, succeeded=False, failure_reason="Card payment cancelled")


async def handle_refund_updated(db: AsyncSession, event: stripe.Event) -> None:
    """Handle refund.updated / refund.failed: finalise an asynchronous card refund."""
    refund = event.data.object
    if refund.status not in ("succeeded", "failed", "canceled"):
        logger.debug("Refund %s still %s, skipping", refund.id, refund.status)
        return
    entry = await _resolve_entry(db, refund, LedgerDirection.REFUND)
    if entry is None:
        logger.warning("No ledger entry found for Stripe refund %s", refund.id)
        return
    await finalize_entry(
        db,
        entry.id,
        succeeded=refund.status == "succeeded",
        external_reference=refund.id,
        failure_reason=f"Card refund {refund.status}",
    )


STRIPE_EVENT_HANDLERS = {
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "payment_intent.payment_failed": handle_payment_intent_failed,
    "payment_intent.canceled": handle_payment_intent_canceled,
    "refund.updated": handle_refund_updated,
    "refund.failed": handle_refund_updated,
}


async def handle_bizum_callback(
    db: AsyncSession, order: str, amount_cents: int, status: str, signature: str
) -> LedgerEntry:
    """Verify and apply a Bizum gateway notification.

    Raises:
        ValidationFailed: bad signature, unknown status, or amount mismatch.
        NotFound: no BIZUM charge with this order reference.
    """
    if not bizum.verify(order, amount_cents, status, signature):
        raise ValidationFailed("Invalid Bizum signature")
    if status not in (bizum.CALLBACK_OK, bizum.CALLBACK_KO):
        raise ValidationFailed("Unknown Bizum status", status=status)

    entry = await find_entry_by_reference(db, order, LedgerDirection.CHARGE)
    if entry is None:
        raise NotFound("No Bizum charge for this order", order=order)
    if entry.amount_cents != amount_cents:
        raise ValidationFailed(
            "Bizum amount does not match the ledger entry",
            order=order,
            expected_cents=entry.amount_cents,
        )

    logger.info("Bizum callback for order %s: %s", order, status)
    return await finalize_entry(
        db,
        entry.id,
        succeeded=status == bizum.CALLBACK_OK,
        external_reference=order,
        failure_reason="Bizum payment rejected",
    )
