"""Court availability and maintenance window API routers."""

import uuid
from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from matchpoint.api.deps import get_current_user, get_db, require_staff
from matchpoint.models.maintenance import MaintenanceWindow
from matchpoint.models.user import User
from matchpoint.schemas.court import (
    AvailabilityResponse,
    MaintenanceCreate,
    MaintenanceResponse,
    MessageResponse,
    SlotResponse,
)
from matchpoint.services import maintenance_service
from matchpoint.services.availability import get_availability

router = APIRouter(prefix="/api/v1/courts", tags=["courts"])

maintenance_router = APIRouter(prefix="/api/v1/maintenance", tags=["maintenance"])


@router.get(
    "/{court_id}/availability",
    response_model=AvailabilityResponse,
    summary="Slot availability for one court and day",
)
async def availability(
    court_id: uuid.UUID,
    day: date = Query(..., alias="date", description="Local calendar date"),
    duration: int = Query(60, ge=1, le=480, description="Slot length in minutes"),
    step: int | None = Query(None, ge=5, description="Minutes between slot starts (defaults to duration)"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> dict:
    """Classify every slot of the day. Advisory only: booking re-checks."""
    slots = await get_availability(
        db, court_id, day, duration, user_id=current_user.id, step_minutes=step
    )
    return {
        "court_id": court_id,
        "date": day,
        "duration_minutes": duration,
        "slots": [SlotResponse.model_validate(s) for s in slots],
    }


@maintenance_router.get(
    "",
    response_model=list[MaintenanceResponse],
    summary="List upcoming maintenance windows of a court (staff)",
)
async def list_maintenance(
    court_id: uuid.UUID = Query(...),
    include_past: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
) -> list[MaintenanceWindow]:
    since = None if include_past else datetime.now(timezone.utc)
    return await maintenance_service.list_windows(db, court_id, since=since)


@maintenance_router.post(
    "",
    response_model=MaintenanceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Schedule a maintenance window (staff)",
)
async def create_maintenance(
    body: MaintenanceCreate,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
) -> MaintenanceWindow:
    return await maintenance_service.create_window(
        db,
        court_id=body.court_id,
        starts_at=body.starts_at,
        ends_at=body.ends_at,
        reason=body.reason,
        actor=staff.id,
    )


@maintenance_router.delete(
    "/{window_id}",
    response_model=MessageResponse,
    summary="Remove a maintenance window (staff)",
)
async def delete_maintenance(
    window_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
) -> dict:
    await maintenance_service.delete_window(db, window_id, actor=staff.id)
    return {"message": "Maintenance window removed"}
