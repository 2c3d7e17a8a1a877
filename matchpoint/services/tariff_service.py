"""Tariff engine: which regulated discount applies to a booking.

Selection is split into two pure rules whose intersection decides
applicability:

- ``age_eligible_tariffs``: active, in validity, scoped to the court, and
  the user's age falls inside ``[min_age, max_age]``.
- ``verified_approvals``: tariffs the user may actually use, i.e. those not
  requiring manual approval plus those with an APPROVED enrollment.

The best (largest discount, newest on ties) verified tariff is applied.
When an even better tariff is age-eligible but unverified, it is reported
as ``pending_verification`` so the booking flow can prompt enrollment.
"""

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from matchpoint.errors import NotFound, ValidationFailed
from matchpoint.models.court import Court
from matchpoint.models.enums import EnrollmentStatus
from matchpoint.models.tariff import Tariff, TariffCourt, TariffEnrollment
from matchpoint.services.audit_service import record_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TariffEvaluation:
    """Outcome of tariff selection for one user, court and moment."""

    applied: Tariff | None = None
    pending_verification: Tariff | None = None

    @property
    def discount_percent(self) -> Decimal:
        return self.applied.discount_percent if self.applied is not None else Decimal(0)

    @property
    def needs_enrollment(self) -> bool:
        return self.pending_verification is not None


def is_in_validity(tariff: Tariff, at: datetime) -> bool:
    return tariff.valid_from <= at and (tariff.valid_until is None or at <= tariff.valid_until)


def age_eligible_tariffs(
    tariffs: Iterable[Tariff], court_id: uuid.UUID, user_age: int, at: datetime
) -> list[Tariff]:
    """Tariffs whose activity, validity, court scope and age band match."""
    return [
        t
        for t in tariffs
        if t.is_active
        and is_in_validity(t, at)
        and (not t.court_ids or court_id in t.court_ids)
        and t.min_age <= user_age
        and (t.max_age is None or user_age <= t.max_age)
    ]


def verified_approvals(
    tariffs: Iterable[Tariff], approved_tariff_ids: Iterable[uuid.UUID]
) -> list[Tariff]:
    """Tariffs usable without further verification for this user."""
    approved = set(approved_tariff_ids)
    return [t for t in tariffs if not t.requires_manual_approval or t.id in approved]


def _rank(tariff: Tariff) -> tuple[Decimal, datetime]:
    created = tariff.created_at or datetime.min.replace(tzinfo=timezone.utc)
    return (Decimal(tariff.discount_percent), created)


def select_tariff(
    tariffs: Iterable[Tariff],
    court_id: uuid.UUID,
    user_age: int | None,
    approved_tariff_ids: Iterable[uuid.UUID],
    at: datetime,
) -> TariffEvaluation:
    """Pick the applicable tariff from candidates already loaded in memory."""
    if user_age is None:
        return TariffEvaluation()

    eligible = age_eligible_tariffs(tariffs, court_id, user_age, at)
    if not eligible:
        return TariffEvaluation()

    usable = verified_approvals(eligible, approved_tariff_ids)
    applied = max(usable, key=_rank) if usable else None
    best = max(eligible, key=_rank)

    pending = None
    if best is not applied and (applied is None or _rank(best) > _rank(applied)):
        pending = best
    return TariffEvaluation(applied=applied, pending_verification=pending)


async def approved_tariff_ids(db: AsyncSession, user_id: uuid.UUID) -> set[uuid.UUID]:
    result = await db.execute(
        select(TariffEnrollment.tariff_id).where(
            TariffEnrollment.user_id == user_id,
            TariffEnrollment.status == EnrollmentStatus.APPROVED,
        )
    )
    return set(result.scalars().all())


async def find_applicable_tariff(
    db: AsyncSession,
    user_id: uuid.UUID,
    court_id: uuid.UUID,
    user_age: int | None,
    at: datetime | None = None,
) -> TariffEvaluation:
    """Evaluate tariffs for a booking; read-only."""
    at = at or datetime.now(timezone.utc)
    result = await db.execute(select(Tariff).where(Tariff.is_active.is_(True)))
    tariffs = list(result.scalars().all())
    evaluation = select_tariff(
        tariffs, court_id, user_age, await approved_tariff_ids(db, user_id), at
    )
    if evaluation.needs_enrollment:
        logger.info(
            "User %s is age-eligible for unverified tariff %s (%s%%)",
            user_id,
            evaluation.pending_verification.id,
            evaluation.pending_verification.discount_percent,
        )
    return evaluation


async def get_tariff(db: AsyncSession, tariff_id: uuid.UUID) -> Tariff:
    tariff = await db.get(Tariff, tariff_id)
    if tariff is None:
        raise NotFound("Tariff not found", tariff_id=str(tariff_id))
    return tariff


async def create_tariff(
    db: AsyncSession,
    *,
    segment: str,
    min_age: int,
    max_age: int | None,
    discount_percent: Decimal,
    actor: uuid.UUID,
    requires_manual_approval: bool = True,
    valid_from: datetime | None = None,
    valid_until: datetime | None = None,
    court_ids: Iterable[uuid.UUID] = (),
    description: str | None = None,
) -> Tariff:
    """Create a tariff after validating ages, discount, validity and scope.

    Only one active tariff may exist per segment.
    """
    if min_age < 0 or (max_age is not None and max_age < min_age):
        raise ValidationFailed("Invalid age range", min_age=min_age, max_age=max_age)
    if not Decimal(0) <= discount_percent <= Decimal(100):
        raise ValidationFailed("Discount must be between 0 and 100")
    valid_from = valid_from or datetime.now(timezone.utc)
    if valid_until is not None and valid_until <= valid_from:
        raise ValidationFailed("valid_until must be after valid_from")

    existing = await db.execute(
        select(Tariff.id).where(Tariff.segment == segment, Tariff.is_active.is_(True))
    )
    if existing.first() is not None:
        raise ValidationFailed("An active tariff already exists for this segment", segment=segment)

    unique_courts = set(court_ids)
    if unique_courts:
        found = await db.execute(select(Court.id).where(Court.id.in_(unique_courts)))
        if len(found.scalars().all()) != len(unique_courts):
            raise ValidationFailed("One or more courts do not exist")

    tariff = Tariff(
        segment=segment,
        description=description,
        min_age=min_age,
        max_age=max_age,
        discount_percent=discount_percent,
        requires_manual_approval=requires_manual_approval,
        valid_from=valid_from,
        valid_until=valid_until,
        is_active=True,
        court_links=[TariffCourt(court_id=court_id) for court_id in unique_courts],
    )
    db.add(tariff)
    await db.flush()
    await db.refresh(tariff)

    await record_event(
        db,
        subject_type="tariff",
        subject_id=tariff.id,
        event_type="tariff.created",
        summary=f"Tariff {segment} created with {discount_percent}% discount",
        actor=actor,
        payload={"segment": segment, "discount_percent": str(discount_percent)},
    )
    logger.info("Created tariff %s (%s, %s%%)", tariff.id, segment, discount_percent)
    return tariff
