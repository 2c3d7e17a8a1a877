"""Tariff and enrollment API routers."""

import uuid
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from matchpoint.api.deps import get_current_user, get_db, require_staff
from matchpoint.config import settings
from matchpoint.models.tariff import Tariff, TariffEnrollment
from matchpoint.models.user import User
from matchpoint.schemas.tariff import (
    ApplicableTariffResponse,
    EnrollmentCreate,
    EnrollmentDecisionRequest,
    EnrollmentResponse,
    TariffCreate,
    TariffResponse,
)
from matchpoint.services import enrollment_service, tariff_service

router = APIRouter(prefix="/api/v1/tariffs", tags=["tariffs"])

enrollments_router = APIRouter(prefix="/api/v1/enrollments", tags=["enrollments"])


@router.post(
    "",
    response_model=TariffResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a tariff (staff)",
)
async def create_tariff(
    body: TariffCreate,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
) -> Tariff:
    return await tariff_service.create_tariff(
        db,
        segment=body.segment,
        description=body.description,
        min_age=body.min_age,
        max_age=body.max_age,
        discount_percent=body.discount_percent,
        requires_manual_approval=body.requires_manual_approval,
        valid_from=body.valid_from,
        valid_until=body.valid_until,
        court_ids=body.court_ids,
        actor=staff.id,
    )


@router.get(
    "/applicable",
    response_model=ApplicableTariffResponse,
    summary="Tariff that would apply to the caller on a court",
)
async def applicable_tariff(
    court_id: uuid.UUID = Query(...),
    at: datetime | None = Query(None, description="Moment of play (defaults to now)"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> dict:
    """Report the applied tariff and, if any, a better one awaiting verification."""
    at = at or datetime.now(timezone.utc)
    age = current_user.age_on(at.astimezone(ZoneInfo(settings.timezone)).date())
    evaluation = await tariff_service.find_applicable_tariff(db, current_user.id, court_id, age, at=at)
    return {
        "applied": evaluation.applied,
        "pending_verification": evaluation.pending_verification,
        "discount_percent": evaluation.discount_percent,
    }


@enrollments_router.post(
    "",
    response_model=EnrollmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request verification for a tariff",
)
async def request_enrollment(
    body: EnrollmentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> TariffEnrollment:
    return await enrollment_service.request_enrollment(db, current_user, body.tariff_id, notes=body.notes)


@enrollments_router.post(
    "/{enrollment_id}/decision",
    response_model=EnrollmentResponse,
    summary="Approve or reject an enrollment (staff)",
)
async def decide_enrollment(
    enrollment_id: uuid.UUID,
    body: EnrollmentDecisionRequest,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
) -> TariffEnrollment:
    return await enrollment_service.decide_enrollment(
        db, enrollment_id, body.decision, actor=staff.id, notes=body.notes
    )
