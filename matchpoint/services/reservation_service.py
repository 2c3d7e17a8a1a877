"""Reservation state machine: slot claims and lifecycle transitions.

Concurrency model:

- ``create_reservation`` and ``cancel_reservation`` lock the court row
  (``SELECT ... FOR UPDATE``) before reading the court's interval set, so
  every claim and release on one court is serialised inside the store and
  the overlap re-check always sees committed competitors.
- Every other transition locks only the reservation row; the ``version``
  column additionally rejects writes based on a stale read.

All functions flush but never commit: the caller owns the transaction.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from matchpoint.config import settings
from matchpoint.errors import (
    CheckInWindowClosed,
    ConcurrentModification,
    InvalidTransition,
    NotFound,
    PaymentRequired,
    SlotConflict,
    ValidationFailed,
)
from matchpoint.models.court import Court
from matchpoint.models.enums import (
    NON_EXPIRABLE_METHODS,
    RELEASED_STATUSES,
    LedgerDirection,
    LedgerStatus,
    PaymentMethod,
    PaymentStatus,
    ReservationStatus,
)
from matchpoint.models.ledger import LedgerEntry
from matchpoint.models.maintenance import MaintenanceWindow
from matchpoint.models.reservation import Reservation
from matchpoint.services.audit_service import SYSTEM_ACTOR, actor_label, record_event
from matchpoint.services.availability import day_bounds
from matchpoint.services.pricing import format_cents
from matchpoint.services.transitions import Action, is_check_in_open, next_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StaffOverride:
    """Manual price adjustment entered by staff; always audited."""

    delta_cents: int
    reason: str
    actor: uuid.UUID


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(timezone.utc)


async def _flush(db: AsyncSession, reservation: Reservation) -> None:
    try:
        await db.flush()
    except StaleDataError as e:
        raise ConcurrentModification(
            "Reservation was modified concurrently", reservation_id=str(reservation.id)
        ) from e


async def lock_court(db: AsyncSession, court_id: uuid.UUID) -> Court:
    result = await db.execute(select(Court).where(Court.id == court_id).with_for_update())
    court = result.scalar_one_or_none()
    if court is None:
        raise NotFound("Court not found", court_id=str(court_id))
    return court


async def get_reservation(
    db: AsyncSession, reservation_id: uuid.UUID, for_update: bool = False
) -> Reservation:
    query = select(Reservation).where(Reservation.id == reservation_id)
    if for_update:
        # Reload attributes so the locked row, not a cached copy, is checked
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    reservation = result.scalar_one_or_none()
    if reservation is None:
        raise NotFound("Reservation not found", reservation_id=str(reservation_id))
    return reservation


async def find_conflicts(
    db: AsyncSession,
    court_id: uuid.UUID,
    starts_at: datetime,
    ends_at: datetime,
) -> list[Reservation]:
    """Reservations still holding a slot on ``court_id`` that overlap the interval."""
    result = await db.execute(
        select(Reservation).where(
            Reservation.court_id == court_id,
            Reservation.status.not_in(RELEASED_STATUSES),
            Reservation.starts_at < ends_at,
            Reservation.ends_at > starts_at,
        )
    )
    return list(result.scalars().all())


def validate_interval(court: Court, starts_at: datetime, duration_minutes: int, now: datetime) -> datetime:
    """Check the requested interval against duration limits and opening hours."""
    if starts_at.tzinfo is None:
        raise ValidationFailed("start time must be timezone-aware")
    if not settings.min_duration_minutes <= duration_minutes <= settings.max_duration_minutes:
        raise ValidationFailed(
            f"Duration must be between {settings.min_duration_minutes} and "
            f"{settings.max_duration_minutes} minutes",
            duration_minutes=duration_minutes,
        )
    ends_at = starts_at + timedelta(minutes=duration_minutes)
    if ends_at <= now:
        raise ValidationFailed("Cannot book a slot that has already ended")

    tz = ZoneInfo(settings.timezone)
    opens, closes = day_bounds(court, starts_at.astimezone(tz).date(), tz)
    if starts_at < opens or ends_at > closes:
        raise ValidationFailed("Requested interval is outside the court's operating hours")
    return ends_at


async def create_reservation(
    db: AsyncSession,
    *,
    court_id: uuid.UUID,
    user_id: uuid.UUID,
    starts_at: datetime,
    duration_minutes: int,
    amount_cents: int,
    payment_method: PaymentMethod | None = None,
    applied_tariff_id: uuid.UUID | None = None,
    promo_code: str | None = None,
    override: StaffOverride | None = None,
    now: datetime | None = None,
) -> Reservation:
    """Atomically claim ``[starts_at, starts_at + duration)`` as a PENDING reservation.

    Raises:
        SlotConflict: the interval overlaps an active reservation or a
            maintenance window. No row is created.
    """
    now = _now(now)
    if amount_cents < 0:
        raise ValidationFailed("Amount cannot be negative")

    court = await lock_court(db, court_id)
    if not court.is_active:
        raise SlotConflict("Court is not available for booking", court_id=str(court_id))
    ends_at = validate_interval(court, starts_at, duration_minutes, now)

    blocked = await db.execute(
        select(
            exists().where(
                MaintenanceWindow.court_id == court_id,
                MaintenanceWindow.starts_at < ends_at,
                MaintenanceWindow.ends_at > starts_at,
            )
        )
    )
    if blocked.scalar():
        raise SlotConflict("Court is under maintenance during the requested interval")

    if await find_conflicts(db, court_id, starts_at, ends_at):
        raise SlotConflict(
            "Requested interval is no longer available",
            court_id=str(court_id),
            starts_at=starts_at.isoformat(),
        )

    reservation = Reservation(
        court_id=court_id,
        user_id=user_id,
        starts_at=starts_at,
        ends_at=ends_at,
        status=ReservationStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        total_amount_cents=amount_cents,
        payment_method=payment_method,
        applied_tariff_id=applied_tariff_id,
        applied_promo_code=promo_code,
        override_adjustment_cents=override.delta_cents if override else None,
        override_reason=override.reason if override else None,
        override_by=override.actor if override else None,
    )
    db.add(reservation)
    await db.flush()

    await record_event(
        db,
        subject_type="reservation",
        subject_id=reservation.id,
        event_type="reservation.created",
        summary=f"Reserved {starts_at.isoformat()} for {duration_minutes} min at {format_cents(amount_cents)}",
        actor=user_id,
        payload={
            "court_id": court_id,
            "user_id": user_id,
            "starts_at": starts_at.isoformat(),
            "ends_at": ends_at.isoformat(),
            "amount_cents": amount_cents,
        },
    )
    if override is not None:
        await record_event(
            db,
            subject_type="reservation",
            subject_id=reservation.id,
            event_type="reservation.price_overridden",
            summary=f"Price adjusted by {format_cents(override.delta_cents)}: {override.reason}",
            actor=override.actor,
            payload={"delta_cents": override.delta_cents, "reason": override.reason},
        )
    logger.info(
        "Created reservation %s on court %s [%s, %s) for user %s",
        reservation.id,
        court_id,
        starts_at,
        ends_at,
        user_id,
    )
    return reservation


async def _transition(
    db: AsyncSession,
    reservation: Reservation,
    action: Action,
    actor: uuid.UUID | str | None,
    summary: str,
    payload: dict | None = None,
) -> Reservation:
    previous = reservation.status
    reservation.status = next_status(previous, action)
    await _flush(db, reservation)
    await record_event(
        db,
        subject_type="reservation",
        subject_id=reservation.id,
        event_type=f"reservation.{action.value}",
        summary=summary,
        actor=actor,
        payload={"from": previous, "to": reservation.status, **(payload or {})},
    )
    logger.info(
        "Reservation %s %s -> %s (%s by %s)",
        reservation.id,
        previous.value,
        reservation.status.value,
        action.value,
        actor_label(actor),
    )
    return reservation


async def mark_paid(
    db: AsyncSession,
    reservation_id: uuid.UUID,
    ledger_entry_id: uuid.UUID,
    now: datetime | None = None,
) -> Reservation:
    """PENDING -> PAID. Idempotent: an already PAID reservation is returned unchanged."""
    reservation = await get_reservation(db, reservation_id, for_update=True)
    if reservation.status == ReservationStatus.PAID and reservation.payment_status == PaymentStatus.PAID:
        return reservation
    reservation.payment_status = PaymentStatus.PAID
    reservation.paid_at = _now(now)
    return await _transition(
        db,
        reservation,
        Action.MARK_PAID,
        SYSTEM_ACTOR,
        "Payment settled",
        {"ledger_entry_id": ledger_entry_id},
    )


async def check_in(
    db: AsyncSession,
    reservation_id: uuid.UUID,
    actor: uuid.UUID | str | None = None,
    now: datetime | None = None,
) -> Reservation:
    """PAID -> IN_PROGRESS inside the check-in window.

    A free booking (amount 0) may check in straight from PENDING.

    Raises:
        CheckInWindowClosed: outside ``[start - tolerance, end]``.
        PaymentRequired: not paid (or refunded) and not free.
    """
    now = _now(now)
    reservation = await get_reservation(db, reservation_id, for_update=True)
    next_status(reservation.status, Action.CHECK_IN)

    if not is_check_in_open(
        reservation.starts_at, reservation.ends_at, settings.check_in_tolerance_minutes, now
    ):
        raise CheckInWindowClosed(
            "Check-in is not open for this reservation",
            opens_at=(reservation.starts_at - timedelta(minutes=settings.check_in_tolerance_minutes)).isoformat(),
            closes_at=reservation.ends_at.isoformat(),
        )

    is_free = reservation.total_amount_cents == 0
    paid = (
        reservation.status == ReservationStatus.PAID
        and reservation.payment_status == PaymentStatus.PAID
    )
    if not (paid or is_free):
        raise PaymentRequired(
            "Reservation must be paid before check-in",
            payment_status=reservation.payment_status.value,
        )

    reservation.checked_in_at = now
    return await _transition(db, reservation, Action.CHECK_IN, actor, "Checked in")


async def check_out(
    db: AsyncSession,
    reservation_id: uuid.UUID,
    actor: uuid.UUID | str | None = None,
    now: datetime | None = None,
) -> Reservation:
    """IN_PROGRESS -> COMPLETED."""
    reservation = await get_reservation(db, reservation_id, for_update=True)
    next_status(reservation.status, Action.CHECK_OUT)
    reservation.completed_at = _now(now)
    return await _transition(db, reservation, Action.CHECK_OUT, actor, "Checked out")


async def cancel_reservation(
    db: AsyncSession,
    reservation_id: uuid.UUID,
    actor: uuid.UUID | str | None,
    reason: str | None = None,
    now: datetime | None = None,
) -> Reservation:
    """{PENDING, PAID} -> CANCELLED, releasing the slot.

    Paid reservations are not refunded here; refunds are a separate,
    explicit settlement action.
    """
    snapshot = await get_reservation(db, reservation_id)
    await lock_court(db, snapshot.court_id)
    reservation = await get_reservation(db, reservation_id, for_update=True)
    next_status(reservation.status, Action.CANCEL)

    reservation.cancelled_at = _now(now)
    reservation.cancelled_by = actor_label(actor)
    reservation.cancellation_reason = reason
    return await _transition(
        db,
        reservation,
        Action.CANCEL,
        actor,
        f"Cancelled{': ' + reason if reason else ''}",
        {"payment_status": reservation.payment_status},
    )


async def mark_no_show(
    db: AsyncSession,
    reservation_id: uuid.UUID,
    actor: uuid.UUID | str | None = None,
    now: datetime | None = None,
) -> Reservation:
    """PAID -> NO_SHOW once the check-in window has closed without a check-in."""
    now = _now(now)
    reservation = await get_reservation(db, reservation_id, for_update=True)
    next_status(reservation.status, Action.MARK_NO_SHOW)
    if now <= reservation.ends_at:
        raise InvalidTransition(
            "Check-in window is still open", closes_at=reservation.ends_at.isoformat()
        )
    return await _transition(db, reservation, Action.MARK_NO_SHOW, actor, "Marked as no-show")


async def sweep_no_shows(db: AsyncSession, now: datetime | None = None) -> int:
    """Mark PAID reservations whose window closed (plus grace) without check-in."""
    now = _now(now)
    cutoff = now - timedelta(minutes=settings.no_show_grace_minutes)
    result = await db.execute(
        select(Reservation)
        .where(
            Reservation.status == ReservationStatus.PAID,
            Reservation.checked_in_at.is_(None),
            Reservation.ends_at < cutoff,
        )
        .with_for_update(skip_locked=True)
    )
    count = 0
    for reservation in result.scalars().all():
        await _transition(db, reservation, Action.MARK_NO_SHOW, SYSTEM_ACTOR, "No check-in before window closed")
        count += 1
    if count:
        logger.info("Marked %d reservations as no-show", count)
    return count


def _live_charge_clause(reservation_id_column):
    return exists().where(
        LedgerEntry.reservation_id == reservation_id_column,
        LedgerEntry.direction == LedgerDirection.CHARGE,
        LedgerEntry.status != LedgerStatus.FAILED,
    )


async def expire_unpaid_reservation(db: AsyncSession, reservation_id: uuid.UUID, now: datetime) -> bool:
    """Cancel one unpaid reservation unless a charge started in the meantime.

    The live-charge check is repeated under the reservation lock; charges
    are only recorded while holding that lock, so none can slip in before
    the cancellation commits.
    """
    snapshot = await get_reservation(db, reservation_id)
    await lock_court(db, snapshot.court_id)
    reservation = await get_reservation(db, reservation_id, for_update=True)
    if reservation.status != ReservationStatus.PENDING:
        return False
    if await db.scalar(select(_live_charge_clause(reservation.id))):
        logger.info("Skipping expiry of reservation %s: a charge is in progress", reservation_id)
        return False
    await cancel_reservation(db, reservation_id, SYSTEM_ACTOR, "Payment not completed in time", now)
    return True


async def expire_unpaid_reservations(db: AsyncSession, now: datetime | None = None) -> int:
    """Cancel stale PENDING reservations that have no live charge.

    Reservations meant to be settled on site or by transfer are kept.
    """
    now = _now(now)
    cutoff = now - timedelta(minutes=settings.pending_reservation_ttl_minutes)
    result = await db.execute(
        select(Reservation.id).where(
            Reservation.status == ReservationStatus.PENDING,
            Reservation.created_at < cutoff,
            Reservation.total_amount_cents > 0,
            (Reservation.payment_method.is_(None)) | (Reservation.payment_method.not_in(NON_EXPIRABLE_METHODS)),
            ~_live_charge_clause(Reservation.id),
        )
    )
    count = 0
    for reservation_id in result.scalars().all():
        try:
            async with db.begin_nested():
                expired = await expire_unpaid_reservation(db, reservation_id, now)
        except (InvalidTransition, ConcurrentModification):
            logger.info("Skipping expiry of reservation %s: changed concurrently", reservation_id)
            continue
        if expired:
            count += 1
    if count:
        logger.info("Expired %d unpaid reservations", count)
    return count
