"""Availability calculator: classify a court's day into bookable slots.

Read-only and advisory: the authoritative conflict check happens again
when a reservation claims the slot.
"""

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from matchpoint.config import settings
from matchpoint.errors import NotFound, ValidationFailed
from matchpoint.models.court import Court
from matchpoint.models.enums import RELEASED_STATUSES, SlotStatus
from matchpoint.models.maintenance import MaintenanceWindow
from matchpoint.models.reservation import Reservation


@dataclass(frozen=True)
class Slot:
    starts_at: datetime
    ends_at: datetime
    status: SlotStatus

    @property
    def is_available(self) -> bool:
        return self.status == SlotStatus.AVAILABLE


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open interval overlap: ``[a_start, a_end)`` against ``[b_start, b_end)``."""
    return a_start < b_end and b_start < a_end


def day_bounds(court: Court, day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Opening and closing instants of ``court`` on ``day`` in local time."""
    opens = datetime.combine(day, court.opens_at, tzinfo=tz)
    closes = datetime.combine(day, court.closes_at, tzinfo=tz)
    if closes <= opens:  # closes after midnight
        closes += timedelta(days=1)
    return opens, closes


def classify_slot(
    start: datetime,
    end: datetime,
    *,
    now: datetime,
    user_id: uuid.UUID | None,
    reservations: Sequence[Reservation],
    windows: Sequence[MaintenanceWindow],
) -> SlotStatus:
    """Status of one in-hours slot; precedence PAST > MAINTENANCE > BOOKED > AVAILABLE."""
    if end <= now:
        return SlotStatus.PAST
    if any(overlaps(start, end, w.starts_at, w.ends_at) for w in windows):
        return SlotStatus.MAINTENANCE
    holders = [
        r for r in reservations
        if r.status not in RELEASED_STATUSES and overlaps(start, end, r.starts_at, r.ends_at)
    ]
    if holders:
        if user_id is not None and any(r.user_id == user_id for r in holders):
            return SlotStatus.USER_BOOKED
        return SlotStatus.BOOKED
    return SlotStatus.AVAILABLE


def build_slots(
    court: Court,
    day: date,
    duration_minutes: int,
    now: datetime,
    reservations: Iterable[Reservation] = (),
    windows: Iterable[MaintenanceWindow] = (),
    user_id: uuid.UUID | None = None,
    step_minutes: int | None = None,
    tz: ZoneInfo | None = None,
) -> list[Slot]:
    """Partition the operating day into ordered slots of ``duration_minutes``.

    Starts advance by ``step_minutes`` (default: the duration). A trailing
    slot that would run past closing time is reported UNAVAILABLE, as is
    every slot of an inactive court.
    """
    if duration_minutes <= 0:
        raise ValidationFailed("Duration must be positive")
    tz = tz or ZoneInfo(settings.timezone)
    step = timedelta(minutes=step_minutes or duration_minutes)
    length = timedelta(minutes=duration_minutes)
    reservations = list(reservations)
    windows = list(windows)

    opens, closes = day_bounds(court, day, tz)
    slots: list[Slot] = []
    start = opens
    while start < closes:
        end = start + length
        if not court.is_active or end > closes:
            status = SlotStatus.UNAVAILABLE
        else:
            status = classify_slot(
                start, end, now=now, user_id=user_id, reservations=reservations, windows=windows
            )
        slots.append(Slot(starts_at=start, ends_at=end, status=status))
        start += step
    return slots


async def get_availability(
    db: AsyncSession,
    court_id: uuid.UUID,
    day: date,
    duration_minutes: int,
    user_id: uuid.UUID | None = None,
    now: datetime | None = None,
    step_minutes: int | None = None,
) -> list[Slot]:
    """Load the court's reservations and maintenance for ``day`` and classify its slots."""
    court = await db.get(Court, court_id)
    if court is None:
        raise NotFound("Court not found", court_id=str(court_id))

    tz = ZoneInfo(settings.timezone)
    opens, closes = day_bounds(court, day, tz)
    reservations = await db.execute(
        select(Reservation).where(
            Reservation.court_id == court_id,
            Reservation.status.not_in(RELEASED_STATUSES),
            Reservation.starts_at < closes,
            Reservation.ends_at > opens,
        )
    )
    windows = await db.execute(
        select(MaintenanceWindow).where(
            MaintenanceWindow.court_id == court_id,
            MaintenanceWindow.starts_at < closes,
            MaintenanceWindow.ends_at > opens,
        )
    )
    return build_slots(
        court,
        day,
        duration_minutes,
        now or datetime.now(timezone.utc),
        reservations.scalars().all(),
        windows.scalars().all(),
        user_id=user_id,
        step_minutes=step_minutes,
        tz=tz,
    )
