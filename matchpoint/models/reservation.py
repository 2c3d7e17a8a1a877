"""Reservation model: one claim on one court interval."""

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from matchpoint.database import Base, UUIDPrimaryKeyMixin
from matchpoint.models.enums import PaymentMethod, PaymentStatus, ReservationStatus


class Reservation(UUIDPrimaryKeyMixin, Base):
    """A booking of ``[starts_at, ends_at)`` on a court.

    Rows are never deleted: cancellation and no-show are status changes.
    ``version`` is the optimistic concurrency token; every transition bumps
    it and a stale write raises ``StaleDataError``.
    """

    __tablename__ = "reservations"

    court_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("courts.id", ondelete="RESTRICT"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[ReservationStatus] = mapped_column(
        Enum(ReservationStatus, name="reservation_status", native_enum=False, length=20),
        default=ReservationStatus.PENDING,
        nullable=False,
        index=True,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="payment_status", native_enum=False, length=20),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_method: Mapped[PaymentMethod | None] = mapped_column(
        Enum(PaymentMethod, name="payment_method", native_enum=False, length=20),
        nullable=True,
    )

    # Pricing provenance
    applied_tariff_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("tariffs.id", ondelete="SET NULL"),
        nullable=True,
    )
    applied_promo_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    override_adjustment_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    override_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    override_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)

    # Lifecycle timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    checked_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("ends_at > starts_at", name="ck_reservations_interval"),
        CheckConstraint("total_amount_cents >= 0", name="ck_reservations_amount"),
        Index("ix_reservations_court_starts_at", "court_id", "starts_at"),
    )

    @property
    def duration_minutes(self) -> int:
        return int((self.ends_at - self.starts_at).total_seconds() // 60)

    @property
    def holds_slot(self) -> bool:
        return self.status not in (ReservationStatus.CANCELLED, ReservationStatus.NO_SHOW)

    def __repr__(self) -> str:
        return (
            f"<Reservation(id={self.id}, court_id={self.court_id}, user_id={self.user_id}, "
            f"status={self.status.value}, payment_status={self.payment_status.value})>"
        )
