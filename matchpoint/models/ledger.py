"""Ledger entry model: append-only monetary events per reservation."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Enum, ForeignKey, Index, Integer, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from matchpoint.database import Base, UUIDPrimaryKeyMixin
from matchpoint.models.enums import LedgerDirection, LedgerStatus, PaymentMethod


class LedgerEntry(UUIDPrimaryKeyMixin, Base):
    """A charge or refund executed through one payment method.

    Entries start PENDING and are finalised exactly once to SUCCEEDED or
    FAILED; terminal entries are never mutated. A reservation's net paid
    amount is the sum of SUCCEEDED charges minus SUCCEEDED refunds.
    """

    __tablename__ = "ledger_entries"

    reservation_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("reservations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    direction: Mapped[LedgerDirection] = mapped_column(
        Enum(LedgerDirection, name="ledger_direction", native_enum=False, length=10),
        nullable=False,
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(
        Enum(PaymentMethod, name="payment_method", native_enum=False, length=20),
        nullable=False,
    )
    status: Mapped[LedgerStatus] = mapped_column(
        Enum(LedgerStatus, name="ledger_status", native_enum=False, length=20),
        default=LedgerStatus.PENDING,
        nullable=False,
    )
    external_reference: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    actor: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    retryable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_ledger_entries_amount"),
        # Exactly-once charge: one live (PENDING or SUCCEEDED) charge per reservation
        Index(
            "uq_ledger_entries_live_charge",
            "reservation_id",
            unique=True,
            postgresql_where=text("direction = 'CHARGE' AND status <> 'FAILED'"),
        ),
        Index("ix_ledger_entries_status_created_at", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != LedgerStatus.PENDING

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry(id={self.id}, reservation_id={self.reservation_id}, "
            f"{self.direction.value} {self.amount_cents} via {self.method.value}, status={self.status.value})>"
        )
