"""Promotion code model."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Enum, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from matchpoint.database import Base, UUIDPrimaryKeyMixin
from matchpoint.models.enums import PromoKind


class PromoCode(UUIDPrimaryKeyMixin, Base):
    """A flat (cents) or percentage discount redeemable at booking time."""

    __tablename__ = "promo_codes"

    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)  # stored upper-case
    kind: Mapped[PromoKind] = mapped_column(
        Enum(PromoKind, name="promo_kind", native_enum=False, length=10),
        nullable=False,
    )
    value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    max_redemptions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    redemptions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self) -> str:
        return f"<PromoCode(code={self.code!r}, kind={self.kind.value}, value={self.value})>"
