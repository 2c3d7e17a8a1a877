"""Tests for exactly-once charges, bounded refunds and reconciliation."""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
import stripe
from sqlalchemy import select

from matchpoint.config import settings
from matchpoint.errors import (
    AlreadySettled,
    GatewayTimeout,
    InsufficientBalance,
    InvalidChargeAmount,
    InvalidRefundAmount,
    InvalidTransition,
    PaymentDeclined,
    PermissionDenied,
    ValidationFailed,
)
from matchpoint.models.audit import AuditEvent
from matchpoint.models.enums import (
    LedgerDirection,
    LedgerStatus,
    PaymentMethod,
    PaymentStatus,
    ReservationStatus,
)
from matchpoint.models.ledger import LedgerEntry
from matchpoint.payments import settlement
from matchpoint.services import wallet_service
from matchpoint.services.reservation_service import cancel_reservation, create_reservation, get_reservation
from conftest import tomorrow_at

pytestmark = pytest.mark.asyncio

CREATE_INTENT = "matchpoint.payments.stripe_client.create_payment_intent"
CANCEL_INTENT = "matchpoint.payments.stripe_client.cancel_payment_intent"
GET_INTENT = "matchpoint.payments.stripe_client.get_payment_intent"


async def _reservation(db, court, user, amount: int = 3000, method: PaymentMethod | None = None, hour: int = 10):
    reservation = await create_reservation(
        db,
        court_id=court.id,
        user_id=user.id,
        starts_at=tomorrow_at(hour),
        duration_minutes=90,
        amount_cents=amount,
        payment_method=method,
    )
    await db.commit()
    return reservation


async def _reload(session_factory, reservation_id):
    async with session_factory() as db:
        return await get_reservation(db, reservation_id)


async def _entry(session_factory, entry_id):
    async with session_factory() as db:
        return await settlement.get_entry(db, entry_id)


async def _fund(db, user, amount: int) -> None:
    await wallet_service.credit(db, user.id, amount, reason="Gift")
    await db.commit()


# ---------------------------------------------------------------------------
# Ledger arithmetic
# ---------------------------------------------------------------------------


def _ledger(direction: LedgerDirection, status: LedgerStatus, amount: int) -> LedgerEntry:
    return LedgerEntry(direction=direction, status=status, amount_cents=amount, method=PaymentMethod.CARD)


class TestLedgerArithmetic:
    def test_net_paid_counts_only_succeeded(self):
        entries = [
            _ledger(LedgerDirection.CHARGE, LedgerStatus.FAILED, 3000),
            _ledger(LedgerDirection.CHARGE, LedgerStatus.SUCCEEDED, 3000),
            _ledger(LedgerDirection.REFUND, LedgerStatus.SUCCEEDED, 1000),
            _ledger(LedgerDirection.REFUND, LedgerStatus.PENDING, 500),
        ]
        assert settlement.net_paid_cents(entries) == 2000

    def test_refundable_reserves_pending_refunds(self):
        entries = [
            _ledger(LedgerDirection.CHARGE, LedgerStatus.SUCCEEDED, 3000),
            _ledger(LedgerDirection.REFUND, LedgerStatus.SUCCEEDED, 1000),
            _ledger(LedgerDirection.REFUND, LedgerStatus.PENDING, 500),
            _ledger(LedgerDirection.REFUND, LedgerStatus.FAILED, 1500),
        ]
        assert settlement.refundable_cents(entries) == 1500

    def test_nothing_refundable_without_charge(self):
        assert settlement.refundable_cents([]) == 0


# ---------------------------------------------------------------------------
# Charges
# ---------------------------------------------------------------------------


class TestCreditsCharge:
    async def test_success_debits_wallet_and_marks_paid(self, session_factory, db_session, court, player):
        await _fund(db_session, player, 5000)
        reservation = await _reservation(db_session, court, player, method=PaymentMethod.CREDITS)

        result = await settlement.charge(session_factory, reservation.id, PaymentMethod.CREDITS, 3000, player)

        assert result.status == LedgerStatus.SUCCEEDED
        assert result.external_reference == f"wallet:{player.id}"
        reloaded = await _reload(session_factory, reservation.id)
        assert reloaded.status == ReservationStatus.PAID
        assert reloaded.payment_status == PaymentStatus.PAID
        async with session_factory() as db:
            wallet = await wallet_service.get_wallet(db, player.id)
            assert wallet.balance_cents == 2000

    async def test_insufficient_balance_fails_entry(self, session_factory, db_session, court, player):
        await _fund(db_session, player, 1000)
        reservation = await _reservation(db_session, court, player)

        with pytest.raises(InsufficientBalance):
            await settlement.charge(session_factory, reservation.id, PaymentMethod.CREDITS, 3000, player)

        async with session_factory() as db:
            entries = await settlement.list_entries(db, reservation.id)
        assert [e.status for e in entries] == [LedgerStatus.FAILED]
        assert (await _reload(session_factory, reservation.id)).status == ReservationStatus.PENDING

        # A failed attempt never blocks a new one
        await _fund(db_session, player, 2000)
        result = await settlement.charge(session_factory, reservation.id, PaymentMethod.CREDITS, 3000, player)
        assert result.status == LedgerStatus.SUCCEEDED

    async def test_second_charge_is_already_settled(self, session_factory, db_session, court, player):
        await _fund(db_session, player, 5000)
        reservation = await _reservation(db_session, court, player)
        await settlement.charge(session_factory, reservation.id, PaymentMethod.CREDITS, 3000, player)

        with pytest.raises(AlreadySettled):
            await settlement.charge(session_factory, reservation.id, PaymentMethod.CREDITS, 3000, player)

    async def test_amount_must_match_total(self, session_factory, db_session, court, player):
        reservation = await _reservation(db_session, court, player)
        with pytest.raises(InvalidChargeAmount):
            await settlement.charge(session_factory, reservation.id, PaymentMethod.CREDITS, 1000, player)
        async with session_factory() as db:
            assert await settlement.list_entries(db, reservation.id) == []


class TestChargeRules:
    async def test_concurrent_charges_create_one_entry(self, session_factory, db_session, court, player):
        reservation = await _reservation(db_session, court, player, method=PaymentMethod.TRANSFER)

        results = await asyncio.gather(
            settlement.charge(session_factory, reservation.id, PaymentMethod.TRANSFER, 3000, player),
            settlement.charge(session_factory, reservation.id, PaymentMethod.TRANSFER, 3000, player),
            return_exceptions=True,
        )

        pending = [r for r in results if isinstance(r, settlement.LedgerResult)]
        settled = [r for r in results if isinstance(r, AlreadySettled)]
        assert len(pending) == 1
        assert len(settled) == 1
        assert pending[0].status == LedgerStatus.PENDING
        async with session_factory() as db:
            assert len(await settlement.list_entries(db, reservation.id)) == 1

    async def test_onsite_requires_staff(self, session_factory, db_session, court, player, staff):
        reservation = await _reservation(db_session, court, player, method=PaymentMethod.ONSITE)
        with pytest.raises(PermissionDenied):
            await settlement.charge(session_factory, reservation.id, PaymentMethod.ONSITE, 3000, player)

        result = await settlement.charge(session_factory, reservation.id, PaymentMethod.ONSITE, 3000, staff)
        assert result.status == LedgerStatus.SUCCEEDED
        assert result.external_reference == f"staff:{staff.id}"

    async def test_courtesy_records_zero_charge(self, session_factory, db_session, court, player, staff):
        reservation = await _reservation(db_session, court, player, amount=0, method=PaymentMethod.COURTESY)
        result = await settlement.charge(session_factory, reservation.id, PaymentMethod.COURTESY, 0, staff)
        assert result.status == LedgerStatus.SUCCEEDED
        assert result.amount_cents == 0
        assert (await _reload(session_factory, reservation.id)).status == ReservationStatus.PAID

    async def test_courtesy_cannot_settle_priced_reservation(self, session_factory, db_session, court, player, staff):
        reservation = await _reservation(db_session, court, player)
        with pytest.raises(InvalidChargeAmount):
            await settlement.charge(session_factory, reservation.id, PaymentMethod.COURTESY, 0, staff)

        reloaded = await _reload(session_factory, reservation.id)
        assert reloaded.status == ReservationStatus.PENDING
        assert reloaded.payment_status == PaymentStatus.PENDING
        async with session_factory() as db:
            assert await settlement.list_entries(db, reservation.id) == []

    async def test_cannot_charge_cancelled_reservation(self, session_factory, db_session, court, player):
        reservation = await _reservation(db_session, court, player)
        await cancel_reservation(db_session, reservation.id, player.id)
        await db_session.commit()
        with pytest.raises(InvalidTransition):
            await settlement.charge(session_factory, reservation.id, PaymentMethod.TRANSFER, 3000, player)


class TestCardCharge:
    async def test_pending_until_webhook(self, session_factory, db_session, court, player):
        reservation = await _reservation(db_session, court, player, method=PaymentMethod.CARD)
        intent = SimpleNamespace(id="pi_test_1", status="requires_payment_method", client_secret="pi_test_1_secret")

        with patch(CREATE_INTENT, AsyncMock(return_value=intent)) as create:
            result = await settlement.charge(session_factory, reservation.id, PaymentMethod.CARD, 3000, player)

        assert create.await_args.args == (3000, reservation.id, result.entry_id)
        assert result.status == LedgerStatus.PENDING
        assert result.client_secret == "pi_test_1_secret"
        assert result.external_reference == "pi_test_1"
        assert (await _entry(session_factory, result.entry_id)).external_reference == "pi_test_1"
        assert (await _reload(session_factory, reservation.id)).status == ReservationStatus.PENDING

    async def test_timeout_fails_entry_as_retryable(self, session_factory, db_session, court, player):
        reservation = await _reservation(db_session, court, player)
        with patch(CREATE_INTENT, AsyncMock(side_effect=stripe.APIConnectionError("timed out"))):
            with pytest.raises(GatewayTimeout):
                await settlement.charge(session_factory, reservation.id, PaymentMethod.CARD, 3000, player)

        async with session_factory() as db:
            (entry,) = await settlement.list_entries(db, reservation.id)
        assert entry.status == LedgerStatus.FAILED
        assert entry.retryable

        # The client may retry with a fresh charge
        intent = SimpleNamespace(id="pi_test_2", status="processing", client_secret="s")
        with patch(CREATE_INTENT, AsyncMock(return_value=intent)):
            result = await settlement.charge(session_factory, reservation.id, PaymentMethod.CARD, 3000, player)
        assert result.status == LedgerStatus.PENDING

    async def test_decline_fails_entry(self, session_factory, db_session, court, player):
        reservation = await _reservation(db_session, court, player)
        declined = stripe.CardError("Your card was declined.", None, "card_declined")
        with patch(CREATE_INTENT, AsyncMock(side_effect=declined)):
            with pytest.raises(PaymentDeclined):
                await settlement.charge(session_factory, reservation.id, PaymentMethod.CARD, 3000, player)

        async with session_factory() as db:
            (entry,) = await settlement.list_entries(db, reservation.id)
        assert entry.status == LedgerStatus.FAILED
        assert not entry.retryable


# ---------------------------------------------------------------------------
# Finalisation, manual confirmation and reconciliation
# ---------------------------------------------------------------------------


async def _pending_card_charge(session_factory, db_session, court, player):
    reservation = await _reservation(db_session, court, player, method=PaymentMethod.CARD)
    intent = SimpleNamespace(id=f"pi_{uuid.uuid4().hex[:8]}", status="requires_payment_method", client_secret="s")
    with patch(CREATE_INTENT, AsyncMock(return_value=intent)):
        result = await settlement.charge(session_factory, reservation.id, PaymentMethod.CARD, 3000, player)
    return reservation, result


class TestFinalisation:
    async def test_finalize_is_idempotent(self, session_factory, db_session, court, player):
        reservation, result = await _pending_card_charge(session_factory, db_session, court, player)

        for _ in range(2):
            async with session_factory() as db, db.begin():
                await settlement.finalize_entry(db, result.entry_id, succeeded=True)

        reloaded = await _reload(session_factory, reservation.id)
        assert reloaded.status == ReservationStatus.PAID
        assert reloaded.version == 2
        async with session_factory() as db:
            events = await db.execute(
                select(AuditEvent.event_type).where(AuditEvent.event_type == "ledger.charge_succeeded")
            )
            assert len(events.scalars().all()) == 1

    async def test_paid_after_release(self, session_factory, db_session, court, player):
        reservation, result = await _pending_card_charge(session_factory, db_session, court, player)
        await cancel_reservation(db_session, reservation.id, player.id, "Changed plans")
        await db_session.commit()

        async with session_factory() as db, db.begin():
            await settlement.finalize_entry(db, result.entry_id, succeeded=True)

        reloaded = await _reload(session_factory, reservation.id)
        assert reloaded.status == ReservationStatus.CANCELLED
        assert reloaded.payment_status == PaymentStatus.PAID
        async with session_factory() as db:
            events = await db.execute(
                select(AuditEvent).where(AuditEvent.event_type == "reservation.paid_after_release")
            )
            assert events.scalar_one().payload["status"] == "CANCELLED"

    async def test_late_confirmation_is_audited(self, session_factory, db_session, court, player):
        reservation = await _reservation(db_session, court, player, method=PaymentMethod.BIZUM)
        with (
            patch.object(settings, "bizum_merchant_code", "999008881"),
            patch.object(settings, "bizum_signing_secret", "s3cret"),
        ):
            result = await settlement.charge(session_factory, reservation.id, PaymentMethod.BIZUM, 3000, player)
        later = datetime.now(timezone.utc) + timedelta(minutes=31)

        async with session_factory() as db, db.begin():
            assert await settlement.reconcile_stale_entries(db, now=later) == 1
        async with session_factory() as db, db.begin():
            entry = await settlement.finalize_entry(db, result.entry_id, succeeded=True)
            assert entry.status == LedgerStatus.FAILED

        assert (await _reload(session_factory, reservation.id)).status == ReservationStatus.PENDING
        async with session_factory() as db:
            events = await db.execute(
                select(AuditEvent.event_type).where(AuditEvent.event_type == "ledger.late_confirmation")
            )
            assert events.scalars().all() == ["ledger.late_confirmation"]

    async def test_transfer_confirmed_by_staff(self, session_factory, db_session, court, player, staff):
        reservation = await _reservation(db_session, court, player, method=PaymentMethod.TRANSFER)
        result = await settlement.charge(session_factory, reservation.id, PaymentMethod.TRANSFER, 3000, player)
        assert result.external_reference.startswith("TRF-")

        async with session_factory() as db, db.begin():
            with pytest.raises(PermissionDenied):
                await settlement.confirm_manual_charge(db, result.entry_id, player)
        async with session_factory() as db, db.begin():
            entry = await settlement.confirm_manual_charge(db, result.entry_id, staff)
            assert entry.status == LedgerStatus.SUCCEEDED

        assert (await _reload(session_factory, reservation.id)).status == ReservationStatus.PAID

    async def test_only_transfers_are_confirmed_manually(self, session_factory, db_session, court, player, staff):
        _, result = await _pending_card_charge(session_factory, db_session, court, player)
        async with session_factory() as db, db.begin():
            with pytest.raises(ValidationFailed):
                await settlement.confirm_manual_charge(db, result.entry_id, staff)

    async def test_reconcile_transfer_after_timeout(self, session_factory, db_session, court, player):
        reservation = await _reservation(db_session, court, player, method=PaymentMethod.TRANSFER)
        result = await settlement.charge(session_factory, reservation.id, PaymentMethod.TRANSFER, 3000, player)

        async with session_factory() as db, db.begin():
            soon = datetime.now(timezone.utc) + timedelta(hours=1)
            assert await settlement.reconcile_stale_entries(db, now=soon) == 0
        async with session_factory() as db, db.begin():
            later = datetime.now(timezone.utc) + timedelta(hours=73)
            assert await settlement.reconcile_stale_entries(db, now=later) == 1

        entry = await _entry(session_factory, result.entry_id)
        assert entry.status == LedgerStatus.FAILED
        assert entry.retryable


    async def test_reconcile_leaves_card_charges_to_expiry(self, session_factory, db_session, court, player):
        _, result = await _pending_card_charge(session_factory, db_session, court, player)
        later = datetime.now(timezone.utc) + timedelta(minutes=31)

        async with session_factory() as db, db.begin():
            assert await settlement.reconcile_stale_entries(db, now=later) == 0
        assert (await _entry(session_factory, result.entry_id)).status == LedgerStatus.PENDING

    async def test_expire_card_charge_cancels_intent(self, session_factory, db_session, court, player):
        reservation, result = await _pending_card_charge(session_factory, db_session, court, player)
        canceled = SimpleNamespace(id=result.external_reference, status="canceled")

        with patch(CANCEL_INTENT, AsyncMock(return_value=canceled)) as cancel:
            soon = datetime.now(timezone.utc) + timedelta(minutes=5)
            assert await settlement.expire_card_charges(session_factory, now=soon) == 0
            cancel.assert_not_awaited()
            later = datetime.now(timezone.utc) + timedelta(minutes=31)
            assert await settlement.expire_card_charges(session_factory, now=later) == 1
        cancel.assert_awaited_once_with(result.external_reference)

        entry = await _entry(session_factory, result.entry_id)
        assert entry.status == LedgerStatus.FAILED
        assert entry.retryable
        # The reservation can be charged again
        assert await settlement.live_charge(db_session, reservation.id) is None

    async def test_expire_card_charge_kept_while_intent_is_paid(self, session_factory, db_session, court, player):
        reservation, result = await _pending_card_charge(session_factory, db_session, court, player)
        paid = SimpleNamespace(id=result.external_reference, status="succeeded")

        with (
            patch(CANCEL_INTENT, AsyncMock(side_effect=stripe.InvalidRequestError("Already succeeded", "intent"))),
            patch(GET_INTENT, AsyncMock(return_value=paid)),
        ):
            later = datetime.now(timezone.utc) + timedelta(minutes=31)
            assert await settlement.expire_card_charges(session_factory, now=later) == 0

        assert (await _entry(session_factory, result.entry_id)).status == LedgerStatus.PENDING
        async with session_factory() as db, db.begin():
            await settlement.finalize_entry(db, result.entry_id, succeeded=True, external_reference=paid.id)
        assert (await _reload(session_factory, reservation.id)).status == ReservationStatus.PAID

    async def test_reconcile_interrupted_in_store_charge(self, session_factory, db_session, court, player):
        reservation = await _reservation(db_session, court, player, method=PaymentMethod.CREDITS)
        await _fund(db_session, player, 3000)
        # Left behind by a process that died between recording and finalising
        stuck = LedgerEntry(
            reservation_id=reservation.id,
            direction=LedgerDirection.CHARGE,
            amount_cents=3000,
            method=PaymentMethod.CREDITS,
            status=LedgerStatus.PENDING,
        )
        db_session.add(stuck)
        await db_session.commit()

        with pytest.raises(AlreadySettled):
            await settlement.charge(session_factory, reservation.id, PaymentMethod.CREDITS, 3000, player)

        async with session_factory() as db, db.begin():
            soon = datetime.now(timezone.utc) + timedelta(minutes=1)
            assert await settlement.reconcile_stale_entries(db, now=soon) == 0
        async with session_factory() as db, db.begin():
            later = datetime.now(timezone.utc) + timedelta(minutes=10)
            assert await settlement.reconcile_stale_entries(db, now=later) == 1

        entry = await _entry(session_factory, stuck.id)
        assert entry.status == LedgerStatus.FAILED
        assert entry.retryable
        result = await settlement.charge(session_factory, reservation.id, PaymentMethod.CREDITS, 3000, player)
        assert result.status == LedgerStatus.SUCCEEDED


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------


class TestRefund:
    async def _paid_with_credits(self, session_factory, db_session, court, player):
        await _fund(db_session, player, 3000)
        reservation = await _reservation(db_session, court, player, method=PaymentMethod.CREDITS)
        await settlement.charge(session_factory, reservation.id, PaymentMethod.CREDITS, 3000, player)
        return reservation

    async def test_partial_refund_back_to_wallet(self, session_factory, db_session, court, player, staff):
        reservation = await self._paid_with_credits(session_factory, db_session, court, player)

        result = await settlement.refund(session_factory, reservation.id, 1000, "Rain delay", staff)

        assert result.status == LedgerStatus.SUCCEEDED
        assert result.method == PaymentMethod.CREDITS
        assert (await _reload(session_factory, reservation.id)).payment_status == PaymentStatus.REFUNDED
        async with session_factory() as db:
            wallet = await wallet_service.get_wallet(db, player.id)
            assert wallet.balance_cents == 1000
            assert settlement.net_paid_cents(await settlement.list_entries(db, reservation.id)) == 2000

    async def test_refund_bounded_by_refundable_balance(self, session_factory, db_session, court, player, staff):
        reservation = await self._paid_with_credits(session_factory, db_session, court, player)
        await settlement.refund(session_factory, reservation.id, 1000, "Rain delay", staff)

        with pytest.raises(InvalidRefundAmount) as exc_info:
            await settlement.refund(session_factory, reservation.id, 2500, "Second thoughts", staff)
        assert exc_info.value.context["refundable_cents"] == 2000

    async def test_refund_after_cancellation(self, session_factory, db_session, court, player, staff):
        reservation = await self._paid_with_credits(session_factory, db_session, court, player)
        await cancel_reservation(db_session, reservation.id, player.id, "Injury")
        await db_session.commit()

        result = await settlement.refund(session_factory, reservation.id, 3000, "Cancelled in time", staff)
        assert result.status == LedgerStatus.SUCCEEDED

    async def test_player_cannot_refund(self, session_factory, db_session, court, player):
        reservation = await self._paid_with_credits(session_factory, db_session, court, player)
        with pytest.raises(PermissionDenied):
            await settlement.refund(session_factory, reservation.id, 1000, "Please", player)

    async def test_no_successful_charge(self, session_factory, db_session, court, player, staff):
        reservation = await _reservation(db_session, court, player)
        with pytest.raises(InvalidRefundAmount):
            await settlement.refund(session_factory, reservation.id, 1000, "Nothing to refund", staff)

    async def test_reason_and_amount_required(self, session_factory, db_session, court, player, staff):
        reservation = await self._paid_with_credits(session_factory, db_session, court, player)
        with pytest.raises(ValidationFailed):
            await settlement.refund(session_factory, reservation.id, 1000, "   ", staff)
        with pytest.raises(InvalidRefundAmount):
            await settlement.refund(session_factory, reservation.id, 0, "Zero", staff)
