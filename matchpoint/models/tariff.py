"""Regulated tariffs and the enrollment requests that unlock them."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from matchpoint.database import Base, UUIDPrimaryKeyMixin
from matchpoint.models.enums import EnrollmentStatus


class Tariff(UUIDPrimaryKeyMixin, Base):
    """An age-banded discount, optionally gated behind manual verification."""

    __tablename__ = "tariffs"

    segment: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    min_age: Mapped[int] = mapped_column(Integer, nullable=False)
    max_age: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = unbounded
    discount_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    requires_manual_approval: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    court_links: Mapped[list["TariffCourt"]] = relationship(
        back_populates="tariff", lazy="selectin", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("discount_percent >= 0 AND discount_percent <= 100", name="ck_tariffs_discount"),
        CheckConstraint("max_age IS NULL OR max_age >= min_age", name="ck_tariffs_ages"),
    )

    @property
    def court_ids(self) -> frozenset[uuid.UUID]:
        """Courts this tariff is scoped to; empty means every court."""
        return frozenset(link.court_id for link in self.court_links)

    def __repr__(self) -> str:
        return f"<Tariff(id={self.id}, segment={self.segment!r}, discount={self.discount_percent}%)>"


class TariffCourt(Base):
    """Scoping row linking a tariff to one court."""

    __tablename__ = "tariff_courts"

    tariff_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tariffs.id", ondelete="CASCADE"), primary_key=True
    )
    court_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("courts.id", ondelete="CASCADE"), primary_key=True
    )

    tariff: Mapped["Tariff"] = relationship(back_populates="court_links")


class TariffEnrollment(UUIDPrimaryKeyMixin, Base):
    """A user's request to be verified for a manual-approval tariff."""

    __tablename__ = "tariff_enrollments"

    tariff_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tariffs.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[EnrollmentStatus] = mapped_column(
        Enum(EnrollmentStatus, name="enrollment_status", native_enum=False, length=20),
        default=EnrollmentStatus.PENDING,
        nullable=False,
    )
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    tariff: Mapped["Tariff"] = relationship(lazy="selectin")

    # At most one live (PENDING or APPROVED) enrollment per user and tariff
    __table_args__ = (
        Index(
            "uq_tariff_enrollments_live",
            "tariff_id",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'APPROVED')"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<TariffEnrollment(id={self.id}, tariff_id={self.tariff_id}, "
            f"user_id={self.user_id}, status={self.status.value})>"
        )
