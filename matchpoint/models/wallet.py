"""Wallet credit balance and its movement journal."""

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from matchpoint.database import Base, TimestampMixin, UUIDPrimaryKeyMixin
from matchpoint.models.enums import WalletMovementType


class Wallet(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Prepaid credit balance, one per user, in cents."""

    __tablename__ = "wallets"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    balance_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    user: Mapped["User"] = relationship(back_populates="wallet", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    __table_args__ = (CheckConstraint("balance_cents >= 0", name="ck_wallets_balance"),)

    def __repr__(self) -> str:
        return f"<Wallet(user_id={self.user_id}, balance_cents={self.balance_cents})>"


class WalletMovement(UUIDPrimaryKeyMixin, Base):
    """Append-only journal line for a wallet credit or debit."""

    __tablename__ = "wallet_movements"

    wallet_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("wallets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    movement_type: Mapped[WalletMovementType] = mapped_column(
        Enum(WalletMovementType, name="wallet_movement_type", native_enum=False, length=10),
        nullable=False,
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    reservation_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    ledger_entry_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
