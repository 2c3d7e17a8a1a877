"""Maintenance window model: blackout periods per court."""

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from matchpoint.database import Base, UUIDPrimaryKeyMixin


class MaintenanceWindow(UUIDPrimaryKeyMixin, Base):
    """A period during which a court cannot be booked.

    Reservations never reference a window by id; availability is a pure
    time-range lookup.
    """

    __tablename__ = "maintenance_windows"

    court_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("courts.id", ondelete="CASCADE"),
        nullable=False,
    )
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str] = mapped_column(String(500), nullable=False)
    created_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("ends_at > starts_at", name="ck_maintenance_windows_interval"),
        Index("ix_maintenance_windows_court_starts_at", "court_id", "starts_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<MaintenanceWindow(id={self.id}, court_id={self.court_id}, "
            f"starts_at={self.starts_at}, ends_at={self.ends_at})>"
        )
