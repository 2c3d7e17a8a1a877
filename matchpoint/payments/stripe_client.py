"""Async Stripe API wrapper for CARD settlements."""

import logging
import uuid

import stripe
from stripe import StripeClient

from matchpoint.config import settings

logger = logging.getLogger(__name__)


def get_stripe_client() -> StripeClient:
    """Create a StripeClient instance with async HTTP support."""
    return StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )


async def create_payment_intent(
    amount_cents: int,
    reservation_id: uuid.UUID,
    ledger_entry_id: uuid.UUID,
    customer_email: str | None = None,
) -> stripe.PaymentIntent:
    """Create a PaymentIntent for one ledger entry.

    The ledger entry id doubles as the Stripe idempotency key, so retrying
    the same entry never creates a second intent.
    """
    client = get_stripe_client()
    logger.info(
        "Creating PaymentIntent for reservation %s (entry %s, %d cents)",
        reservation_id,
        ledger_entry_id,
        amount_cents,
    )
    params = {
        "amount": amount_cents,
        "currency": settings.currency,
        "automatic_payment_methods": {"enabled": True},
        "metadata": {
            "reservation_id": str(reservation_id),
            "ledger_entry_id": str(ledger_entry_id),
        },
    }
    if customer_email:
        params["receipt_email"] = customer_email
    intent = await client.v1.payment_intents.create_async(
        params=params,
        options={"idempotency_key": f"charge-{ledger_entry_id}"},
    )
    logger.info("Created PaymentIntent %s (status=%s)", intent.id, intent.status)
    return intent


async def cancel_payment_intent(payment_intent_id: str) -> stripe.PaymentIntent:
    """Cancel an unpaid PaymentIntent so its client secret can no longer be used."""
    client = get_stripe_client()
    logger.info("Cancelling PaymentIntent %s", payment_intent_id)
    return await client.v1.payment_intents.cancel_async(
        payment_intent_id,
        params={"cancellation_reason": "abandoned"},
    )


async def get_payment_intent(payment_intent_id: str) -> stripe.PaymentIntent:
    client = get_stripe_client()
    return await client.v1.payment_intents.retrieve_async(payment_intent_id)


async def create_refund(
    payment_intent_id: str,
    amount_cents: int,
    ledger_entry_id: uuid.UUID,
) -> stripe.Refund:
    """Refund part or all of a captured PaymentIntent."""
    client = get_stripe_client()
    logger.info("Refunding %d cents of PaymentIntent %s (entry %s)", amount_cents, payment_intent_id, ledger_entry_id)
    return await client.v1.refunds.create_async(
        params={
            "payment_intent": payment_intent_id,
            "amount": amount_cents,
            "metadata": {"ledger_entry_id": str(ledger_entry_id)},
        },
        options={"idempotency_key": f"refund-{ledger_entry_id}"},
    )


def construct_webhook_event(payload: bytes, sig_header: str) -> stripe.Event:
    """Verify and construct a Stripe webhook event (synchronous)."""
    client = get_stripe_client()
    return client.construct_event(payload, sig_header, settings.stripe_webhook_secret)
