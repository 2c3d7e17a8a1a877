"""User model: players and staff."""

from datetime import date

from sqlalchemy import Boolean, Date, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from matchpoint.database import Base, TimestampMixin, UUIDPrimaryKeyMixin
from matchpoint.models.enums import UserRole


class User(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A player who books courts, or a staff member who manages them."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    birth_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    role: Mapped[str] = mapped_column(String(50), default=UserRole.PLAYER.value, nullable=False)

    # Relationships
    wallet: Mapped["Wallet | None"] = relationship(  # type: ignore[name-defined]  # noqa: F821
        "Wallet", back_populates="user", uselist=False, lazy="selectin"
    )

    @property
    def is_staff(self) -> bool:
        return self.role in (UserRole.STAFF.value, UserRole.ADMIN.value)

    def age_on(self, day: date) -> int | None:
        """Full years completed on ``day``; None when no birth date is on file."""
        if self.birth_date is None:
            return None
        born = self.birth_date
        return day.year - born.year - ((day.month, day.day) < (born.month, born.day))

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} role={self.role!r}>"
