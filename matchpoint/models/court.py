"""Court model: the bookable resource."""

from datetime import time

from sqlalchemy import Boolean, Integer, String, Time
from sqlalchemy.orm import Mapped, mapped_column

from matchpoint.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Court(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A sports court with daily operating hours and an hourly rate.

    Reservations copy the computed amount at creation time, so later rate
    changes never touch existing bookings.
    """

    __tablename__ = "courts"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sport: Mapped[str | None] = mapped_column(String(50), nullable=True)
    opens_at: Mapped[time] = mapped_column(Time, nullable=False)
    closes_at: Mapped[time] = mapped_column(Time, nullable=False)
    hourly_rate_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Court(id={self.id}, name={self.name!r}, active={self.is_active})>"
