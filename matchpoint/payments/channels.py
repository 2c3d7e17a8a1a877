"""Settlement channels: one implementation per payment method.

A channel only knows how to move money through its own rail. Ledger
bookkeeping, idempotency and reservation updates live in
``matchpoint.payments.settlement`` and are identical for every method.

Each operation is split in two:

- ``execute_*`` talks to the outside world and runs with no database
  transaction open.
- ``apply_*`` runs inside the transaction that finalises the ledger entry,
  for rails whose money lives in our own store (wallet credits).
"""

import logging
import uuid
from dataclasses import dataclass

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from matchpoint.errors import (
    GatewayTimeout,
    InvalidChargeAmount,
    InvalidRefundAmount,
    PaymentDeclined,
    PermissionDenied,
    ValidationFailed,
)
from matchpoint.models.enums import LedgerStatus, PaymentMethod
from matchpoint.models.user import User
from matchpoint.payments import bizum, stripe_client
from matchpoint.services import wallet_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementRequest:
    """What a channel needs to move money for one ledger entry."""

    entry_id: uuid.UUID
    reservation_id: uuid.UUID
    user_id: uuid.UUID
    amount_cents: int
    actor: User | None = None
    reason: str | None = None
    charge_reference: str | None = None  # refunds: reference of the original charge


@dataclass(frozen=True)
class ChannelResult:
    status: LedgerStatus
    external_reference: str | None = None
    client_secret: str | None = None
    redirect_url: str | None = None


def staff_reference(actor: User | None) -> str:
    if actor is None or not actor.is_staff:
        raise PermissionDenied("A staff member must confirm this settlement")
    return f"staff:{actor.id}"


class SettlementChannel:
    method: PaymentMethod
    staff_only: bool = False

    def validate_charge(self, amount_cents: int, reservation_total_cents: int, actor: User | None) -> None:
        if self.staff_only:
            staff_reference(actor)
        if amount_cents <= 0:
            raise InvalidChargeAmount(
                f"{self.method.value} charges must be positive", amount_cents=amount_cents
            )
        if amount_cents != reservation_total_cents:
            raise InvalidChargeAmount(
                "Charge amount does not match the reservation total",
                amount_cents=amount_cents,
                expected_cents=reservation_total_cents,
            )

    def validate_refund(self, actor: User | None) -> None:
        staff_reference(actor)

    async def execute_charge(self, request: SettlementRequest) -> ChannelResult:
        raise NotImplementedError

    async def apply_charge(self, db: AsyncSession, request: SettlementRequest) -> None:
        return None

    async def void_charge(self, reference: str | None) -> bool:
        """Make sure a PENDING charge can no longer complete before it is failed."""
        return True

    async def execute_refund(self, request: SettlementRequest) -> ChannelResult:
        """Money handed back by staff (cash, bank transfer, Bizum app)."""
        return ChannelResult(LedgerStatus.SUCCEEDED, staff_reference(request.actor))

    async def apply_refund(self, db: AsyncSession, request: SettlementRequest) -> None:
        return None


def _translate_stripe_error(exc: stripe.StripeError) -> Exception:
    logger.warning("Stripe call failed: %s (%s)", type(exc).__name__, exc)
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return GatewayTimeout("Card gateway did not respond", gateway_error=type(exc).__name__)
    if isinstance(exc, stripe.CardError):
        return PaymentDeclined(exc.user_message or "Card was declined", decline_code=exc.code)
    if isinstance(exc, stripe.APIError):
        return GatewayTimeout("Card gateway error", gateway_error=type(exc).__name__)
    return PaymentDeclined(exc.user_message or "Card payment rejected", gateway_error=type(exc).__name__)


class CardChannel(SettlementChannel):
    """Stripe PaymentIntents; the webhook confirms asynchronously."""

    method = PaymentMethod.CARD

    async def execute_charge(self, request: SettlementRequest) -> ChannelResult:
        try:
            intent = await stripe_client.create_payment_intent(
                request.amount_cents, request.reservation_id, request.entry_id
            )
        except stripe.StripeError as e:
            raise _translate_stripe_error(e) from e
        status = LedgerStatus.SUCCEEDED if intent.status == "succeeded" else LedgerStatus.PENDING
        return ChannelResult(status, intent.id, client_secret=intent.client_secret)

    async def void_charge(self, reference: str | None) -> bool:
        """Cancel the PaymentIntent so the payer cannot complete it later.

        Returns False when the intent is already paid or processing, or the
        gateway cannot be reached; the entry must then stay PENDING.
        """
        if not reference:
            # The client secret is only returned after the reference is stored
            return True
        try:
            intent = await stripe_client.cancel_payment_intent(reference)
        except stripe.InvalidRequestError:
            # Stripe refuses to cancel intents that are already final
            try:
                intent = await stripe_client.get_payment_intent(reference)
            except stripe.StripeError as e:
                logger.warning("Could not look up PaymentIntent %s: %s", reference, type(e).__name__)
                return False
        except stripe.StripeError as e:
            logger.warning("Could not cancel PaymentIntent %s: %s", reference, type(e).__name__)
            return False
        return intent.status == "canceled"

    async def execute_refund(self, request: SettlementRequest) -> ChannelResult:
        if not request.charge_reference:
            raise ValidationFailed("Original card charge has no gateway reference")
        try:
            refund = await stripe_client.create_refund(
                request.charge_reference, request.amount_cents, request.entry_id
            )
        except stripe.StripeError as e:
            raise _translate_stripe_error(e) from e
        if refund.status == "succeeded":
            return ChannelResult(LedgerStatus.SUCCEEDED, refund.id)
        if refund.status in ("failed", "canceled"):
            raise PaymentDeclined("Card refund was rejected", refund_id=refund.id)
        return ChannelResult(LedgerStatus.PENDING, refund.id)


class BizumChannel(SettlementChannel):
    """Signed redirect; the gateway calls back with the outcome."""

    method = PaymentMethod.BIZUM

    def validate_charge(self, amount_cents: int, reservation_total_cents: int, actor: User | None) -> None:
        if not bizum.is_configured():
            raise ValidationFailed("Bizum payments are not available")
        super().validate_charge(amount_cents, reservation_total_cents, actor)

    async def execute_charge(self, request: SettlementRequest) -> ChannelResult:
        order = bizum.order_reference(request.entry_id)
        return ChannelResult(
            LedgerStatus.PENDING,
            order,
            redirect_url=bizum.build_redirect_url(order, request.amount_cents),
        )


class TransferChannel(SettlementChannel):
    """Bank transfer; staff confirm once the money shows up."""

    method = PaymentMethod.TRANSFER

    async def execute_charge(self, request: SettlementRequest) -> ChannelResult:
        return ChannelResult(LedgerStatus.PENDING, f"TRF-{request.entry_id.hex[:10].upper()}")


class OnsiteChannel(SettlementChannel):
    """Cash or terminal at the front desk, confirmed by the staff member present."""

    method = PaymentMethod.ONSITE
    staff_only = True

    async def execute_charge(self, request: SettlementRequest) -> ChannelResult:
        return ChannelResult(LedgerStatus.SUCCEEDED, staff_reference(request.actor))


class CreditsChannel(SettlementChannel):
    """Prepaid wallet credits, settled entirely inside our store."""

    method = PaymentMethod.CREDITS

    async def execute_charge(self, request: SettlementRequest) -> ChannelResult:
        return ChannelResult(LedgerStatus.SUCCEEDED, f"wallet:{request.user_id}")

    async def apply_charge(self, db: AsyncSession, request: SettlementRequest) -> None:
        await wallet_service.debit(
            db,
            request.user_id,
            request.amount_cents,
            reason="Reservation payment",
            reservation_id=request.reservation_id,
            ledger_entry_id=request.entry_id,
        )

    async def execute_refund(self, request: SettlementRequest) -> ChannelResult:
        return ChannelResult(LedgerStatus.SUCCEEDED, f"wallet:{request.user_id}")

    async def apply_refund(self, db: AsyncSession, request: SettlementRequest) -> None:
        await wallet_service.credit(
            db,
            request.user_id,
            request.amount_cents,
            reason=request.reason or "Reservation refund",
            reservation_id=request.reservation_id,
            ledger_entry_id=request.entry_id,
        )


class CourtesyChannel(SettlementChannel):
    """Staff-granted free play; records a zero charge."""

    method = PaymentMethod.COURTESY
    staff_only = True

    def validate_charge(self, amount_cents: int, reservation_total_cents: int, actor: User | None) -> None:
        staff_reference(actor)
        if amount_cents != 0:
            raise InvalidChargeAmount("Courtesy charges must be zero", amount_cents=amount_cents)
        # Waiving a priced booking goes through the staff override when booking
        if reservation_total_cents != 0:
            raise InvalidChargeAmount(
                "Courtesy settles only free reservations",
                amount_cents=amount_cents,
                expected_cents=reservation_total_cents,
            )

    async def execute_charge(self, request: SettlementRequest) -> ChannelResult:
        return ChannelResult(LedgerStatus.SUCCEEDED, staff_reference(request.actor))

    async def execute_refund(self, request: SettlementRequest) -> ChannelResult:
        raise InvalidRefundAmount("Courtesy charges have nothing to refund")


CHANNELS: dict[PaymentMethod, SettlementChannel] = {
    channel.method: channel
    for channel in (
        CardChannel(),
        BizumChannel(),
        TransferChannel(),
        OnsiteChannel(),
        CreditsChannel(),
        CourtesyChannel(),
    )
}


def get_channel(method: PaymentMethod) -> SettlementChannel:
    return CHANNELS[method]
