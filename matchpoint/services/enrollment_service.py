"""Tariff enrollment workflow: request, staff decision, and expiry."""

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from matchpoint.config import settings
from matchpoint.errors import InvalidTransition, NotFound, ValidationFailed
from matchpoint.models.enums import EnrollmentDecision, EnrollmentStatus
from matchpoint.models.tariff import Tariff, TariffEnrollment
from matchpoint.models.user import User
from matchpoint.services.audit_service import SYSTEM_ACTOR, record_event
from matchpoint.services.tariff_service import get_tariff, is_in_validity

logger = logging.getLogger(__name__)

LIVE_STATUSES = (EnrollmentStatus.PENDING, EnrollmentStatus.APPROVED)


async def _get_enrollment_for_update(db: AsyncSession, enrollment_id: uuid.UUID) -> TariffEnrollment:
    result = await db.execute(
        select(TariffEnrollment).where(TariffEnrollment.id == enrollment_id).with_for_update()
    )
    enrollment = result.scalar_one_or_none()
    if enrollment is None:
        raise NotFound("Enrollment not found", enrollment_id=str(enrollment_id))
    return enrollment


async def request_enrollment(
    db: AsyncSession,
    user: User,
    tariff_id: uuid.UUID,
    notes: str | None = None,
    now: datetime | None = None,
) -> TariffEnrollment:
    """Create a PENDING enrollment for ``user`` on a manual-approval tariff.

    Raises:
        ValidationFailed: tariff inactive, user outside the age band, or a
            PENDING/APPROVED enrollment already exists. A previous REJECTED
            or EXPIRED enrollment does not block a new request.
    """
    now = now or datetime.now(timezone.utc)
    tariff = await get_tariff(db, tariff_id)
    if not tariff.is_active or not is_in_validity(tariff, now):
        raise ValidationFailed("Tariff is not available", tariff_id=str(tariff_id))

    age = user.age_on(now.date())
    if age is None:
        raise ValidationFailed("User has no birth date on file")
    if age < tariff.min_age or (tariff.max_age is not None and age > tariff.max_age):
        raise ValidationFailed("User age is outside the tariff's age band", age=age)

    existing = await db.execute(
        select(TariffEnrollment.id).where(
            TariffEnrollment.user_id == user.id,
            TariffEnrollment.tariff_id == tariff_id,
            TariffEnrollment.status.in_(LIVE_STATUSES),
        )
    )
    if existing.first() is not None:
        raise ValidationFailed("An active enrollment already exists for this tariff")

    enrollment = TariffEnrollment(
        tariff_id=tariff_id,
        user_id=user.id,
        status=EnrollmentStatus.PENDING,
        requested_at=now,
        notes=notes,
    )
    try:
        async with db.begin_nested():
            db.add(enrollment)
            await db.flush()
    except IntegrityError as e:
        raise ValidationFailed("An active enrollment already exists for this tariff") from e

    await record_event(
        db,
        subject_type="enrollment",
        subject_id=enrollment.id,
        event_type="enrollment.requested",
        summary=f"Enrollment requested for tariff {tariff.segment}",
        actor=user.id,
        payload={"tariff_id": tariff_id, "user_id": user.id},
    )
    logger.info("Enrollment %s requested by user %s for tariff %s", enrollment.id, user.id, tariff_id)
    return enrollment


async def approve_enrollment(
    db: AsyncSession,
    enrollment_id: uuid.UUID,
    actor: uuid.UUID,
    notes: str | None = None,
    now: datetime | None = None,
) -> TariffEnrollment:
    """PENDING -> APPROVED. Approving an APPROVED enrollment is a no-op."""
    enrollment = await _get_enrollment_for_update(db, enrollment_id)
    if enrollment.status == EnrollmentStatus.APPROVED:
        return enrollment
    if enrollment.status != EnrollmentStatus.PENDING:
        raise InvalidTransition(
            f"Cannot approve an enrollment in status {enrollment.status.value}",
            enrollment_id=str(enrollment_id),
        )

    enrollment.status = EnrollmentStatus.APPROVED
    enrollment.decided_at = now or datetime.now(timezone.utc)
    enrollment.decided_by = actor
    if notes:
        enrollment.notes = notes
    await db.flush()

    await record_event(
        db,
        subject_type="enrollment",
        subject_id=enrollment.id,
        event_type="enrollment.approved",
        summary="Enrollment approved",
        actor=actor,
        payload={"tariff_id": enrollment.tariff_id, "user_id": enrollment.user_id},
    )
    logger.info("Enrollment %s approved by %s", enrollment.id, actor)
    return enrollment


async def reject_enrollment(
    db: AsyncSession,
    enrollment_id: uuid.UUID,
    actor: uuid.UUID,
    reason: str,
    notes: str | None = None,
    now: datetime | None = None,
) -> TariffEnrollment:
    """PENDING -> REJECTED with a mandatory reason. Re-rejecting is a no-op."""
    reason = (reason or "").strip()
    if len(reason) < settings.rejection_reason_min_length:
        raise ValidationFailed(
            f"Rejection reason must be at least {settings.rejection_reason_min_length} characters"
        )

    enrollment = await _get_enrollment_for_update(db, enrollment_id)
    if enrollment.status == EnrollmentStatus.REJECTED:
        return enrollment
    if enrollment.status != EnrollmentStatus.PENDING:
        raise InvalidTransition(
            f"Cannot reject an enrollment in status {enrollment.status.value}",
            enrollment_id=str(enrollment_id),
        )

    enrollment.status = EnrollmentStatus.REJECTED
    enrollment.decided_at = now or datetime.now(timezone.utc)
    enrollment.decided_by = actor
    enrollment.notes = " - ".join(part for part in (reason, notes) if part)
    await db.flush()

    await record_event(
        db,
        subject_type="enrollment",
        subject_id=enrollment.id,
        event_type="enrollment.rejected",
        summary=f"Enrollment rejected: {reason}",
        actor=actor,
        payload={"tariff_id": enrollment.tariff_id, "user_id": enrollment.user_id},
    )
    logger.info("Enrollment %s rejected by %s", enrollment.id, actor)
    return enrollment


async def decide_enrollment(
    db: AsyncSession,
    enrollment_id: uuid.UUID,
    decision: EnrollmentDecision,
    actor: uuid.UUID,
    notes: str | None = None,
) -> TariffEnrollment:
    """Single entry point for staff decisions; REJECT uses ``notes`` as the reason."""
    if decision == EnrollmentDecision.APPROVE:
        return await approve_enrollment(db, enrollment_id, actor, notes)
    return await reject_enrollment(db, enrollment_id, actor, reason=notes or "")


async def expire_enrollments(db: AsyncSession, now: datetime | None = None) -> int:
    """Move live enrollments to EXPIRED when their tariff lapsed or their TTL passed."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=settings.enrollment_ttl_days)
    result = await db.execute(
        select(TariffEnrollment)
        .join(Tariff, TariffEnrollment.tariff_id == Tariff.id)
        .where(
            TariffEnrollment.status.in_(LIVE_STATUSES),
            or_(
                Tariff.valid_until < now,
                Tariff.is_active.is_(False),
                (TariffEnrollment.status == EnrollmentStatus.PENDING) & (TariffEnrollment.requested_at < cutoff),
                (TariffEnrollment.status == EnrollmentStatus.APPROVED) & (TariffEnrollment.decided_at < cutoff),
            ),
        )
        .with_for_update(of=TariffEnrollment, skip_locked=True)
    )
    expired = 0
    for enrollment in result.scalars().all():
        previous = enrollment.status
        enrollment.status = EnrollmentStatus.EXPIRED
        enrollment.decided_at = enrollment.decided_at or now
        await record_event(
            db,
            subject_type="enrollment",
            subject_id=enrollment.id,
            event_type="enrollment.expired",
            summary=f"Enrollment expired (was {previous.value})",
            actor=SYSTEM_ACTOR,
        )
        expired += 1
    await db.flush()
    if expired:
        logger.info("Expired %d tariff enrollments", expired)
    return expired
