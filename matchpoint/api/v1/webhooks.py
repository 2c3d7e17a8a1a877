"""Payment gateway webhook endpoints: Stripe events and Bizum notifications."""

import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from matchpoint.database import get_session_factory
from matchpoint.errors import MatchpointError
from matchpoint.payments.stripe_client import construct_webhook_event
from matchpoint.payments.webhooks import STRIPE_EVENT_HANDLERS, handle_bizum_callback
from matchpoint.schemas.payment import BizumCallback

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict[str, str]:
    """Finalise CARD ledger entries from signed Stripe events.

    Signature verification needs the raw body. Each event is applied in its
    own transaction; a crash rolls back and answers 500 so Stripe redelivers.
    """
    try:
        event = construct_webhook_event(await request.body(), request.headers.get("stripe-signature", ""))
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning("Rejected Stripe webhook: %s", type(e).__name__)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid Stripe webhook") from e

    handler = STRIPE_EVENT_HANDLERS.get(event.type)
    if handler is None:
        logger.debug("Ignoring Stripe event %s", event.type)
        return {"status": "ignored"}

    logger.info("Stripe event %s (id=%s)", event.type, event.id)
    try:
        async with session_factory() as db, db.begin():
            await handler(db, event)
    except Exception as e:
        logger.exception("Stripe event %s could not be applied", event.id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e
    return {"status": "processed"}


@router.post("/bizum")
async def bizum_webhook(
    body: BizumCallback,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict[str, str]:
    """Receive a signed Bizum payment notification.

    Domain errors (bad signature, unknown order) propagate to the
    application error handler and are answered with their own status.
    """
    try:
        async with session_factory() as db, db.begin():
            entry = await handle_bizum_callback(db, body.order, body.amount_cents, body.status, body.signature)
    except MatchpointError as e:
        logger.warning("Rejected Bizum callback for order %s: %s", body.order, e.code)
        raise
    return {"status": entry.status.value}
