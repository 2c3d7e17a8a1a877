"""Payment settlement: exactly-once charges and bounded refunds.

Every charge and refund follows the same three steps, whatever the
payment method:

1. One short transaction locks the reservation, checks legality and the
   idempotency guard, and records a PENDING ledger entry.
2. The channel moves the money with no transaction open, so a slow
   gateway never holds a row lock.
3. A second transaction finalises the entry (SUCCEEDED or FAILED) and
   updates the reservation. Gateway-confirmed methods skip this step and
   are finalised later by their webhook or by staff.

The partial unique index on live charges backs the idempotency guard at
the store level: two concurrent ``charge`` calls for one reservation
yield one PENDING entry and one ``AlreadySettled``.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from matchpoint.config import settings
from matchpoint.errors import (
    AlreadySettled,
    InsufficientBalance,
    InvalidRefundAmount,
    InvalidTransition,
    MatchpointError,
    NotFound,
    ValidationFailed,
)
from matchpoint.models.enums import (
    LedgerDirection,
    LedgerStatus,
    PaymentMethod,
    PaymentStatus,
    ReservationStatus,
)
from matchpoint.models.ledger import LedgerEntry
from matchpoint.models.user import User
from matchpoint.payments.channels import (
    ChannelResult,
    SettlementRequest,
    get_channel,
    staff_reference,
)
from matchpoint.services.audit_service import SYSTEM_ACTOR, actor_label, record_event
from matchpoint.services.pricing import format_cents
from matchpoint.services.reservation_service import get_reservation, mark_paid

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]

IN_STORE_METHODS = (PaymentMethod.CREDITS, PaymentMethod.ONSITE, PaymentMethod.COURTESY)


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of a charge or refund as reported to the caller."""

    entry_id: uuid.UUID
    reservation_id: uuid.UUID
    direction: LedgerDirection
    method: PaymentMethod
    status: LedgerStatus
    amount_cents: int
    external_reference: str | None = None
    client_secret: str | None = None
    redirect_url: str | None = None
    failure_reason: str | None = None
    retryable: bool = False

    @classmethod
    def from_entry(cls, entry: LedgerEntry, outcome: ChannelResult | None = None) -> "LedgerResult":
        return cls(
            entry_id=entry.id,
            reservation_id=entry.reservation_id,
            direction=entry.direction,
            method=entry.method,
            status=entry.status,
            amount_cents=entry.amount_cents,
            external_reference=entry.external_reference,
            client_secret=outcome.client_secret if outcome else None,
            redirect_url=outcome.redirect_url if outcome else None,
            failure_reason=entry.failure_reason,
            retryable=entry.retryable,
        )


# ---------------------------------------------------------------------------
# Ledger queries
# ---------------------------------------------------------------------------


def _sum(entries: Iterable[LedgerEntry], direction: LedgerDirection, statuses: tuple[LedgerStatus, ...]) -> int:
    return sum(e.amount_cents for e in entries if e.direction == direction and e.status in statuses)


def net_paid_cents(entries: Iterable[LedgerEntry]) -> int:
    """Succeeded charges minus succeeded refunds."""
    entries = list(entries)
    return _sum(entries, LedgerDirection.CHARGE, (LedgerStatus.SUCCEEDED,)) - _sum(
        entries, LedgerDirection.REFUND, (LedgerStatus.SUCCEEDED,)
    )


def refundable_cents(entries: Iterable[LedgerEntry]) -> int:
    """Amount still refundable; in-flight refunds are already reserved."""
    entries = list(entries)
    charged = _sum(entries, LedgerDirection.CHARGE, (LedgerStatus.SUCCEEDED,))
    refunded = _sum(entries, LedgerDirection.REFUND, (LedgerStatus.SUCCEEDED, LedgerStatus.PENDING))
    return max(0, charged - refunded)


async def list_entries(db: AsyncSession, reservation_id: uuid.UUID) -> list[LedgerEntry]:
    result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.reservation_id == reservation_id)
        .order_by(LedgerEntry.created_at, LedgerEntry.id)
    )
    return list(result.scalars().all())


async def live_charge(db: AsyncSession, reservation_id: uuid.UUID) -> LedgerEntry | None:
    result = await db.execute(
        select(LedgerEntry).where(
            LedgerEntry.reservation_id == reservation_id,
            LedgerEntry.direction == LedgerDirection.CHARGE,
            LedgerEntry.status != LedgerStatus.FAILED,
        )
    )
    return result.scalar_one_or_none()


async def get_entry(db: AsyncSession, entry_id: uuid.UUID, for_update: bool = False) -> LedgerEntry:
    query = select(LedgerEntry).where(LedgerEntry.id == entry_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    entry = result.scalar_one_or_none()
    if entry is None:
        raise NotFound("Ledger entry not found", entry_id=str(entry_id))
    return entry


async def find_entry_by_reference(
    db: AsyncSession, reference: str, direction: LedgerDirection
) -> LedgerEntry | None:
    result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.external_reference == reference, LedgerEntry.direction == direction)
        .order_by(LedgerEntry.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Finalisation (always inside the caller's transaction)
# ---------------------------------------------------------------------------


async def _settle_reservation(db: AsyncSession, entry: LedgerEntry, now: datetime) -> None:
    reservation = await get_reservation(db, entry.reservation_id, for_update=True)
    if reservation.status == ReservationStatus.PENDING:
        await mark_paid(db, reservation.id, entry.id, now)
        return

    # The slot was released while the payment was in flight: keep the money
    # visible on the reservation and leave the status alone.
    reservation.payment_status = PaymentStatus.PAID
    reservation.paid_at = now
    await db.flush()
    await record_event(
        db,
        subject_type="reservation",
        subject_id=reservation.id,
        event_type="reservation.paid_after_release",
        summary=f"Payment settled while reservation was {reservation.status.value}",
        actor=SYSTEM_ACTOR,
        payload={"ledger_entry_id": entry.id, "status": reservation.status},
    )
    logger.warning(
        "Charge %s settled on reservation %s in status %s; refund may be due",
        entry.id,
        reservation.id,
        reservation.status.value,
    )


async def _record_refund(db: AsyncSession, entry: LedgerEntry) -> None:
    reservation = await get_reservation(db, entry.reservation_id, for_update=True)
    reservation.payment_status = PaymentStatus.REFUNDED
    await db.flush()
    await record_event(
        db,
        subject_type="reservation",
        subject_id=reservation.id,
        event_type="reservation.refunded",
        summary=f"Refunded {format_cents(entry.amount_cents)}",
        actor=entry.actor,
        payload={"ledger_entry_id": entry.id, "amount_cents": entry.amount_cents},
    )


async def mark_entry_succeeded(
    db: AsyncSession,
    entry: LedgerEntry,
    external_reference: str | None = None,
    actor: uuid.UUID | str | None = None,
    now: datetime | None = None,
) -> LedgerEntry:
    now = now or datetime.now(timezone.utc)
    entry.status = LedgerStatus.SUCCEEDED
    entry.finalized_at = now
    entry.retryable = False
    if external_reference:
        entry.external_reference = external_reference
    await db.flush()

    direction = entry.direction.value.lower()
    await record_event(
        db,
        subject_type="ledger_entry",
        subject_id=entry.id,
        event_type=f"ledger.{direction}_succeeded",
        summary=f"{entry.direction.value} of {format_cents(entry.amount_cents)} via {entry.method.value} succeeded",
        actor=actor or SYSTEM_ACTOR,
        payload={
            "reservation_id": entry.reservation_id,
            "amount_cents": entry.amount_cents,
            "method": entry.method,
            "external_reference": entry.external_reference,
        },
    )
    if entry.direction == LedgerDirection.CHARGE:
        await _settle_reservation(db, entry, now)
    else:
        await _record_refund(db, entry)
    logger.info("Ledger entry %s %s succeeded", entry.id, direction)
    return entry


async def mark_entry_failed(
    db: AsyncSession,
    entry: LedgerEntry,
    reason: str,
    retryable: bool = False,
    now: datetime | None = None,
) -> LedgerEntry:
    """FAILED is terminal; the reservation's payment status is left untouched."""
    entry.status = LedgerStatus.FAILED
    entry.failure_reason = reason[:500]
    entry.retryable = retryable
    entry.finalized_at = now or datetime.now(timezone.utc)
    await db.flush()

    direction = entry.direction.value.lower()
    await record_event(
        db,
        subject_type="ledger_entry",
        subject_id=entry.id,
        event_type=f"ledger.{direction}_failed",
        summary=f"{entry.direction.value} via {entry.method.value} failed: {reason}",
        actor=SYSTEM_ACTOR,
        payload={
            "reservation_id": entry.reservation_id,
            "amount_cents": entry.amount_cents,
            "retryable": retryable,
        },
    )
    logger.info("Ledger entry %s %s failed (retryable=%s): %s", entry.id, direction, retryable, reason)
    return entry


async def finalize_entry(
    db: AsyncSession,
    entry_id: uuid.UUID,
    *,
    succeeded: bool,
    external_reference: str | None = None,
    failure_reason: str | None = None,
    actor: uuid.UUID | str | None = None,
) -> LedgerEntry:
    """Apply a gateway or staff verdict to a PENDING entry.

    Idempotent: terminal entries are returned untouched. A success
    reported for an entry already swept to FAILED is audited for manual
    follow-up instead of being applied.
    """
    entry = await get_entry(db, entry_id, for_update=True)
    if entry.is_terminal:
        if succeeded and entry.status == LedgerStatus.FAILED:
            await record_event(
                db,
                subject_type="ledger_entry",
                subject_id=entry.id,
                event_type="ledger.late_confirmation",
                summary="Gateway confirmed a payment already marked as failed",
                actor=actor or SYSTEM_ACTOR,
                payload={"reservation_id": entry.reservation_id, "external_reference": external_reference},
            )
            logger.warning("Late success for failed ledger entry %s (%s)", entry.id, external_reference)
        else:
            logger.info("Ledger entry %s already %s; ignoring verdict", entry.id, entry.status.value)
        return entry

    if succeeded:
        return await mark_entry_succeeded(db, entry, external_reference, actor)
    return await mark_entry_failed(db, entry, failure_reason or "Rejected by payment gateway")


async def confirm_manual_charge(db: AsyncSession, entry_id: uuid.UUID, actor: User) -> LedgerEntry:
    """Staff confirmation that a bank transfer arrived."""
    staff_reference(actor)
    entry = await get_entry(db, entry_id, for_update=True)
    if entry.method != PaymentMethod.TRANSFER or entry.direction != LedgerDirection.CHARGE:
        raise ValidationFailed("Only transfer charges are confirmed manually", entry_id=str(entry_id))
    return await finalize_entry(db, entry_id, succeeded=True, actor=actor.id)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


async def _fail_in_new_transaction(
    session_factory: SessionFactory, entry_id: uuid.UUID, error: MatchpointError
) -> None:
    async with session_factory() as db, db.begin():
        entry = await get_entry(db, entry_id, for_update=True)
        if not entry.is_terminal:
            await mark_entry_failed(db, entry, error.message, retryable=error.retryable)


async def _finalize_in_new_transaction(
    session_factory: SessionFactory,
    request: SettlementRequest,
    outcome: ChannelResult,
    apply: Callable[[AsyncSession, SettlementRequest], Awaitable[None]],
) -> LedgerResult:
    failure: MatchpointError | None = None
    async with session_factory() as db, db.begin():
        entry = await get_entry(db, request.entry_id, for_update=True)
        if entry.is_terminal:
            return LedgerResult.from_entry(entry, outcome)
        try:
            async with db.begin_nested():
                await apply(db, request)
        except InsufficientBalance as e:
            failure = e
            await mark_entry_failed(db, entry, e.message, retryable=False)
        else:
            await mark_entry_succeeded(
                db, entry, outcome.external_reference, request.actor.id if request.actor else None
            )
        result = LedgerResult.from_entry(entry, outcome)
    if failure is not None:
        raise failure
    return result


async def _remember_pending(
    session_factory: SessionFactory, request: SettlementRequest, outcome: ChannelResult
) -> LedgerResult:
    async with session_factory() as db, db.begin():
        entry = await get_entry(db, request.entry_id, for_update=True)
        # A fast webhook may already have finalised the entry
        if not entry.is_terminal and outcome.external_reference:
            entry.external_reference = outcome.external_reference
        return LedgerResult.from_entry(entry, outcome)


async def _run_channel(
    session_factory: SessionFactory,
    request: SettlementRequest,
    execute: Callable[[SettlementRequest], Awaitable[ChannelResult]],
    apply: Callable[[AsyncSession, SettlementRequest], Awaitable[None]],
) -> LedgerResult:
    try:
        outcome = await execute(request)
    except MatchpointError as e:
        await _fail_in_new_transaction(session_factory, request.entry_id, e)
        raise
    if outcome.status == LedgerStatus.SUCCEEDED:
        return await _finalize_in_new_transaction(session_factory, request, outcome, apply)
    return await _remember_pending(session_factory, request, outcome)


async def charge(
    session_factory: SessionFactory,
    reservation_id: uuid.UUID,
    method: PaymentMethod,
    amount_cents: int,
    actor: User | None = None,
) -> LedgerResult:
    """Charge a reservation exactly once through ``method``.

    Raises:
        AlreadySettled: a PENDING or SUCCEEDED charge already exists.
        InvalidChargeAmount: amount does not fit the method or reservation.
        InsufficientBalance: CREDITS charge with too little wallet credit.
        GatewayTimeout: transient gateway failure; the entry is FAILED and
            a new charge may be attempted.
        PaymentDeclined: permanent rejection; the entry is FAILED.
    """
    channel = get_channel(method)
    try:
        async with session_factory() as db, db.begin():
            reservation = await get_reservation(db, reservation_id, for_update=True)
            existing = await live_charge(db, reservation_id)
            if existing is not None or reservation.payment_status == PaymentStatus.PAID:
                raise AlreadySettled(
                    "Reservation already has a charge",
                    reservation_id=str(reservation_id),
                    entry_id=str(existing.id) if existing else None,
                )
            if reservation.status != ReservationStatus.PENDING:
                raise InvalidTransition(
                    f"Cannot charge a reservation in status {reservation.status.value}",
                    reservation_id=str(reservation_id),
                )
            channel.validate_charge(amount_cents, reservation.total_amount_cents, actor)

            entry = LedgerEntry(
                reservation_id=reservation.id,
                direction=LedgerDirection.CHARGE,
                amount_cents=amount_cents,
                method=method,
                status=LedgerStatus.PENDING,
                actor=actor_label(actor.id if actor else None),
                retryable=False,
            )
            db.add(entry)
            await db.flush()
            await record_event(
                db,
                subject_type="ledger_entry",
                subject_id=entry.id,
                event_type="ledger.charge_initiated",
                summary=f"Charging {format_cents(amount_cents)} via {method.value}",
                actor=entry.actor,
                payload={"reservation_id": reservation.id, "amount_cents": amount_cents, "method": method},
            )
            request = SettlementRequest(
                entry_id=entry.id,
                reservation_id=reservation.id,
                user_id=reservation.user_id,
                amount_cents=amount_cents,
                actor=actor,
            )
    except IntegrityError as e:
        raise AlreadySettled(
            "A charge is already in progress for this reservation", reservation_id=str(reservation_id)
        ) from e

    logger.info("Charge %s initiated for reservation %s via %s", request.entry_id, reservation_id, method.value)
    return await _run_channel(session_factory, request, channel.execute_charge, channel.apply_charge)


async def refund(
    session_factory: SessionFactory,
    reservation_id: uuid.UUID,
    amount_cents: int,
    reason: str,
    actor: User | None = None,
) -> LedgerResult:
    """Refund part or all of a reservation's successful charge.

    Legal in any reservation status once a charge has succeeded. The
    refund goes back through the method of the original charge.

    Raises:
        InvalidRefundAmount: no successful charge, non-positive amount, or
            more than the refundable balance.
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed("A refund reason is required")
    if amount_cents <= 0:
        raise InvalidRefundAmount("Refund amount must be positive", amount_cents=amount_cents)

    async with session_factory() as db, db.begin():
        reservation = await get_reservation(db, reservation_id, for_update=True)
        entries = await list_entries(db, reservation_id)
        original = next(
            (
                e
                for e in entries
                if e.direction == LedgerDirection.CHARGE and e.status == LedgerStatus.SUCCEEDED
            ),
            None,
        )
        if original is None:
            raise InvalidRefundAmount(
                "Reservation has no successful charge to refund", refundable_cents=0
            )
        channel = get_channel(original.method)
        channel.validate_refund(actor)
        available = refundable_cents(entries)
        if amount_cents > available:
            raise InvalidRefundAmount(
                "Refund exceeds the refundable balance",
                amount_cents=amount_cents,
                refundable_cents=available,
            )

        entry = LedgerEntry(
            reservation_id=reservation.id,
            direction=LedgerDirection.REFUND,
            amount_cents=amount_cents,
            method=original.method,
            status=LedgerStatus.PENDING,
            actor=actor_label(actor.id if actor else None),
            reason=reason,
            retryable=False,
        )
        db.add(entry)
        await db.flush()
        await record_event(
            db,
            subject_type="ledger_entry",
            subject_id=entry.id,
            event_type="ledger.refund_initiated",
            summary=f"Refunding {format_cents(amount_cents)} via {original.method.value}: {reason}",
            actor=entry.actor,
            payload={"reservation_id": reservation.id, "amount_cents": amount_cents, "charge_entry_id": original.id},
        )
        request = SettlementRequest(
            entry_id=entry.id,
            reservation_id=reservation.id,
            user_id=reservation.user_id,
            amount_cents=amount_cents,
            actor=actor,
            reason=reason,
            charge_reference=original.external_reference,
        )

    logger.info("Refund %s initiated for reservation %s (%d cents)", request.entry_id, reservation_id, amount_cents)
    return await _run_channel(session_factory, request, channel.execute_refund, channel.apply_refund)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


STALE_REASON = "No confirmation received before timeout"


async def reconcile_stale_entries(db: AsyncSession, now: datetime | None = None) -> int:
    """Fail PENDING entries whose confirmation never arrived.

    Bizum entries and card refunds time out after
    ``gateway_pending_timeout_minutes``, bank transfers after
    ``transfer_pending_timeout_hours``. Credits, on-site and courtesy
    entries complete within the request that created them, so one still
    PENDING after ``in_store_pending_timeout_minutes`` was interrupted.
    Entries are marked retryable so a fresh charge can be attempted.

    Card charges are left to :func:`expire_card_charges`, which cancels
    the PaymentIntent first.
    """
    now = now or datetime.now(timezone.utc)
    gateway_cutoff = now - timedelta(minutes=settings.gateway_pending_timeout_minutes)
    transfer_cutoff = now - timedelta(hours=settings.transfer_pending_timeout_hours)
    in_store_cutoff = now - timedelta(minutes=settings.in_store_pending_timeout_minutes)
    result = await db.execute(
        select(LedgerEntry)
        .where(
            LedgerEntry.status == LedgerStatus.PENDING,
            or_(
                and_(LedgerEntry.method == PaymentMethod.BIZUM, LedgerEntry.created_at < gateway_cutoff),
                and_(
                    LedgerEntry.method == PaymentMethod.CARD,
                    LedgerEntry.direction == LedgerDirection.REFUND,
                    LedgerEntry.created_at < gateway_cutoff,
                ),
                and_(LedgerEntry.method == PaymentMethod.TRANSFER, LedgerEntry.created_at < transfer_cutoff),
                and_(LedgerEntry.method.in_(IN_STORE_METHODS), LedgerEntry.created_at < in_store_cutoff),
            ),
        )
        .with_for_update(skip_locked=True)
    )
    count = 0
    for entry in result.scalars().all():
        await mark_entry_failed(db, entry, STALE_REASON, retryable=True, now=now)
        count += 1
    if count:
        logger.info("Reconciled %d stale ledger entries", count)
    return count


async def expire_card_charges(session_factory: SessionFactory, now: datetime | None = None) -> int:
    """Cancel and fail CARD charges the payer never completed.

    Each PaymentIntent is cancelled with no transaction open. An intent
    that cannot be cancelled (already paid, processing, gateway down)
    keeps its entry PENDING for the webhook or the next pass.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=settings.gateway_pending_timeout_minutes)
    async with session_factory() as db:
        result = await db.execute(
            select(LedgerEntry.id, LedgerEntry.external_reference).where(
                LedgerEntry.status == LedgerStatus.PENDING,
                LedgerEntry.method == PaymentMethod.CARD,
                LedgerEntry.direction == LedgerDirection.CHARGE,
                LedgerEntry.created_at < cutoff,
            )
        )
        stale = result.all()

    channel = get_channel(PaymentMethod.CARD)
    count = 0
    for entry_id, reference in stale:
        if not await channel.void_charge(reference):
            logger.info("Card charge %s is still live at the gateway; left pending", entry_id)
            continue
        async with session_factory() as db, db.begin():
            entry = await get_entry(db, entry_id, for_update=True)
            if entry.is_terminal:
                continue
            await mark_entry_failed(db, entry, STALE_REASON, retryable=True, now=now)
            count += 1
    if count:
        logger.info("Expired %d abandoned card charges", count)
    return count
