"""Reservations API router: booking, lifecycle transitions and settlement.

Ownership rule: players can only see and act on **their own**
reservations; staff can act on any. A reservation owned by someone else
is reported as not found.
"""

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from matchpoint.api.deps import get_current_user, get_db, get_session_factory, require_staff
from matchpoint.errors import NotFound
from matchpoint.models.ledger import LedgerEntry
from matchpoint.models.reservation import Reservation
from matchpoint.models.user import User
from matchpoint.payments import settlement
from matchpoint.schemas.payment import (
    ChargeRequest,
    LedgerEntryResponse,
    LedgerResponse,
    LedgerResultResponse,
    RefundRequest,
)
from matchpoint.schemas.reservation import (
    BookingResponse,
    CancelRequest,
    PriceBreakdownResponse,
    ReservationCreate,
    ReservationResponse,
)
from matchpoint.services import booking_service, reservation_service

router = APIRouter(prefix="/api/v1/reservations", tags=["reservations"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _get_visible_reservation(
    reservation_id: uuid.UUID,
    current_user: User,
    db: AsyncSession,
) -> Reservation:
    """Fetch a reservation the current user is allowed to see."""
    reservation = await reservation_service.get_reservation(db, reservation_id)
    if not current_user.is_staff and reservation.user_id != current_user.id:
        raise NotFound("Reservation not found", reservation_id=str(reservation_id))
    return reservation


async def _end_request_transaction(db: AsyncSession) -> None:
    """Commit the request session before settlement calls out to a gateway.

    The session already served the bearer-token lookup; left open it would
    sit idle in transaction for the whole gateway round trip. Settlement
    runs its own short transactions.
    """
    await db.commit()


# ---------------------------------------------------------------------------
# Booking
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Quote and book a court slot",
)
async def create_reservation(
    body: ReservationCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> dict:
    """Price the slot for the user and claim it as a PENDING reservation.

    Returns 409 ``slot_conflict`` when the interval was taken in the
    meantime; the client should pick another slot.
    """
    result = await booking_service.book(
        db,
        court_id=body.court_id,
        user_id=body.user_id or current_user.id,
        starts_at=body.starts_at,
        duration_minutes=body.duration_minutes,
        actor=current_user,
        promo_code=body.promo_code,
        payment_method=body.payment_method,
        override_delta_cents=body.override_delta_cents,
        override_reason=body.override_reason,
    )
    breakdown = result.quote.breakdown
    tariff = result.quote.tariff
    return {
        "reservation": result.reservation,
        "price": PriceBreakdownResponse(
            base_cents=breakdown.base,
            tariff_discount_cents=breakdown.tariff_discount,
            promo_discount_cents=breakdown.promo_discount,
            override_delta_cents=breakdown.override_delta_cents,
            final_cents=result.reservation.total_amount_cents,
        ),
        "applied_tariff_segment": tariff.applied.segment if tariff.applied else None,
        "pending_verification_tariff_id": (
            tariff.pending_verification.id if tariff.pending_verification else None
        ),
    }


@router.get("/{reservation_id}", response_model=ReservationResponse, summary="Get a reservation")
async def get_reservation(
    reservation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Reservation:
    return await _get_visible_reservation(reservation_id, current_user, db)


# ---------------------------------------------------------------------------
# Lifecycle transitions
# ---------------------------------------------------------------------------


@router.post("/{reservation_id}/check-in", response_model=ReservationResponse, summary="Check in")
async def check_in(
    reservation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Reservation:
    await _get_visible_reservation(reservation_id, current_user, db)
    return await reservation_service.check_in(db, reservation_id, actor=current_user.id)


@router.post("/{reservation_id}/check-out", response_model=ReservationResponse, summary="Check out")
async def check_out(
    reservation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Reservation:
    await _get_visible_reservation(reservation_id, current_user, db)
    return await reservation_service.check_out(db, reservation_id, actor=current_user.id)


@router.post("/{reservation_id}/cancel", response_model=ReservationResponse, summary="Cancel a reservation")
async def cancel(
    reservation_id: uuid.UUID,
    body: CancelRequest | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Reservation:
    """Release the slot. Paid reservations are not refunded automatically."""
    await _get_visible_reservation(reservation_id, current_user, db)
    return await reservation_service.cancel_reservation(
        db, reservation_id, actor=current_user.id, reason=body.reason if body else None
    )


@router.post("/{reservation_id}/no-show", response_model=ReservationResponse, summary="Mark as no-show")
async def no_show(
    reservation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
) -> Reservation:
    return await reservation_service.mark_no_show(db, reservation_id, actor=staff.id)


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


@router.post(
    "/{reservation_id}/charge",
    response_model=LedgerResultResponse,
    summary="Charge a reservation",
)
async def charge(
    reservation_id: uuid.UUID,
    body: ChargeRequest,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    current_user: User = Depends(get_current_user),
) -> settlement.LedgerResult:
    """Charge through the chosen method.

    CARD returns a PENDING entry with a ``client_secret``; BIZUM returns a
    ``redirect_url``; TRANSFER stays PENDING until staff confirm it.
    """
    await _get_visible_reservation(reservation_id, current_user, db)
    await _end_request_transaction(db)
    return await settlement.charge(
        session_factory, reservation_id, body.method, body.amount_cents, actor=current_user
    )


@router.post(
    "/{reservation_id}/refund",
    response_model=LedgerResultResponse,
    summary="Refund a reservation (staff)",
)
async def refund(
    reservation_id: uuid.UUID,
    body: RefundRequest,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    staff: User = Depends(require_staff),
) -> settlement.LedgerResult:
    await _end_request_transaction(db)
    return await settlement.refund(
        session_factory, reservation_id, body.amount_cents, body.reason, actor=staff
    )


@router.get("/{reservation_id}/ledger", response_model=LedgerResponse, summary="Ledger of a reservation")
async def get_ledger(
    reservation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> dict:
    await _get_visible_reservation(reservation_id, current_user, db)
    entries = await settlement.list_entries(db, reservation_id)
    return {
        "entries": [LedgerEntryResponse.model_validate(e) for e in entries],
        "net_paid_cents": settlement.net_paid_cents(entries),
        "refundable_cents": settlement.refundable_cents(entries),
    }


# Staff confirmation lives under /ledger
ledger_router = APIRouter(prefix="/api/v1/ledger", tags=["ledger"])


@ledger_router.post(
    "/{entry_id}/confirm",
    response_model=LedgerEntryResponse,
    summary="Confirm a bank transfer (staff)",
)
async def confirm_entry(
    entry_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
) -> LedgerEntry:
    return await settlement.confirm_manual_charge(db, entry_id, staff)
