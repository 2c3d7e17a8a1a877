"""Maintenance windows: staff-managed blackout periods per court."""

import logging
import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from matchpoint.errors import NotFound, ValidationFailed
from matchpoint.models.maintenance import MaintenanceWindow
from matchpoint.services.audit_service import record_event
from matchpoint.services.reservation_service import find_conflicts, lock_court

logger = logging.getLogger(__name__)


async def create_window(
    db: AsyncSession,
    *,
    court_id: uuid.UUID,
    starts_at: datetime,
    ends_at: datetime,
    reason: str,
    actor: uuid.UUID,
) -> MaintenanceWindow:
    """Block ``[starts_at, ends_at)`` on a court.

    Windows on the same court may not overlap each other. Existing
    reservations in the interval are kept; they are reported in the audit
    payload so staff can contact the players.
    """
    if starts_at.tzinfo is None or ends_at.tzinfo is None:
        raise ValidationFailed("Maintenance times must be timezone-aware")
    if ends_at <= starts_at:
        raise ValidationFailed("Maintenance window must end after it starts")
    if not reason or not reason.strip():
        raise ValidationFailed("A reason is required")

    await lock_court(db, court_id)
    overlapping = await db.execute(
        select(MaintenanceWindow.id).where(
            MaintenanceWindow.court_id == court_id,
            MaintenanceWindow.starts_at < ends_at,
            MaintenanceWindow.ends_at > starts_at,
        )
    )
    if overlapping.first() is not None:
        raise ValidationFailed("Overlaps an existing maintenance window", court_id=str(court_id))

    affected = await find_conflicts(db, court_id, starts_at, ends_at)
    window = MaintenanceWindow(
        court_id=court_id,
        starts_at=starts_at,
        ends_at=ends_at,
        reason=reason.strip(),
        created_by=actor,
    )
    db.add(window)
    await db.flush()

    await record_event(
        db,
        subject_type="maintenance",
        subject_id=window.id,
        event_type="maintenance.scheduled",
        summary=f"Court blocked {starts_at.isoformat()} to {ends_at.isoformat()}: {window.reason}",
        actor=actor,
        payload={
            "court_id": court_id,
            "affected_reservations": [str(r.id) for r in affected],
        },
    )
    if affected:
        logger.warning(
            "Maintenance window %s overlaps %d existing reservations on court %s",
            window.id,
            len(affected),
            court_id,
        )
    return window


async def delete_window(db: AsyncSession, window_id: uuid.UUID, actor: uuid.UUID) -> None:
    window = await db.get(MaintenanceWindow, window_id)
    if window is None:
        raise NotFound("Maintenance window not found", window_id=str(window_id))
    await lock_court(db, window.court_id)
    await db.delete(window)
    await db.flush()
    await record_event(
        db,
        subject_type="maintenance",
        subject_id=window_id,
        event_type="maintenance.removed",
        summary="Maintenance window removed",
        actor=actor,
        payload={"court_id": window.court_id},
    )


async def list_windows(
    db: AsyncSession, court_id: uuid.UUID, since: datetime | None = None
) -> list[MaintenanceWindow]:
    query = select(MaintenanceWindow).where(MaintenanceWindow.court_id == court_id)
    if since is not None:
        query = query.where(MaintenanceWindow.ends_at > since)
    result = await db.execute(query.order_by(MaintenanceWindow.starts_at))
    return list(result.scalars().all())
