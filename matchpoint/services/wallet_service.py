"""Prepaid wallet credits used by the CREDITS payment method."""

import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from matchpoint.errors import InsufficientBalance, NotFound, ValidationFailed
from matchpoint.models.enums import WalletMovementType
from matchpoint.models.wallet import Wallet, WalletMovement
from matchpoint.services.audit_service import record_event

logger = logging.getLogger(__name__)


async def get_wallet(db: AsyncSession, user_id: uuid.UUID) -> Wallet:
    result = await db.execute(select(Wallet).where(Wallet.user_id == user_id))
    wallet = result.scalar_one_or_none()
    if wallet is None:
        raise NotFound("Wallet not found", user_id=str(user_id))
    return wallet


async def get_or_create_wallet(db: AsyncSession, user_id: uuid.UUID) -> Wallet:
    result = await db.execute(select(Wallet).where(Wallet.user_id == user_id))
    wallet = result.scalar_one_or_none()
    if wallet is None:
        wallet = Wallet(user_id=user_id, balance_cents=0)
        db.add(wallet)
        await db.flush()
    return wallet


async def debit(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount_cents: int,
    reason: str,
    reservation_id: uuid.UUID | None = None,
    ledger_entry_id: uuid.UUID | None = None,
) -> int:
    """Atomically take ``amount_cents`` from the user's wallet.

    Check and decrement are one conditional UPDATE, so two concurrent
    debits can never overdraw the balance. Returns the new balance.

    Raises:
        InsufficientBalance: no wallet, or balance below ``amount_cents``.
    """
    if amount_cents <= 0:
        raise ValidationFailed("Debit amount must be positive")
    result = await db.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id, Wallet.balance_cents >= amount_cents)
        .values(balance_cents=Wallet.balance_cents - amount_cents)
        .returning(Wallet.id, Wallet.balance_cents)
    )
    row = result.one_or_none()
    if row is None:
        raise InsufficientBalance(
            "Not enough wallet credit", user_id=str(user_id), amount_cents=amount_cents
        )
    wallet_id, balance = row
    db.add(
        WalletMovement(
            wallet_id=wallet_id,
            movement_type=WalletMovementType.DEBIT,
            amount_cents=amount_cents,
            balance_after_cents=balance,
            reason=reason,
            reservation_id=reservation_id,
            ledger_entry_id=ledger_entry_id,
        )
    )
    await db.flush()
    logger.info("Debited %d cents from wallet of user %s (balance %d)", amount_cents, user_id, balance)
    return balance


async def credit(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount_cents: int,
    reason: str,
    reservation_id: uuid.UUID | None = None,
    ledger_entry_id: uuid.UUID | None = None,
) -> int:
    """Add ``amount_cents`` to the user's wallet, creating it if needed."""
    if amount_cents <= 0:
        raise ValidationFailed("Credit amount must be positive")
    wallet = await get_or_create_wallet(db, user_id)
    result = await db.execute(
        update(Wallet)
        .where(Wallet.id == wallet.id)
        .values(balance_cents=Wallet.balance_cents + amount_cents)
        .returning(Wallet.balance_cents)
    )
    balance = result.scalar_one()
    db.add(
        WalletMovement(
            wallet_id=wallet.id,
            movement_type=WalletMovementType.CREDIT,
            amount_cents=amount_cents,
            balance_after_cents=balance,
            reason=reason,
            reservation_id=reservation_id,
            ledger_entry_id=ledger_entry_id,
        )
    )
    await db.flush()
    logger.info("Credited %d cents to wallet of user %s (balance %d)", amount_cents, user_id, balance)
    return balance


async def top_up(db: AsyncSession, user_id: uuid.UUID, amount_cents: int, actor: uuid.UUID) -> int:
    """Staff-initiated credit purchase recorded at the front desk."""
    balance = await credit(db, user_id, amount_cents, reason="Top-up")
    await record_event(
        db,
        subject_type="wallet",
        subject_id=user_id,
        event_type="wallet.topped_up",
        summary=f"Wallet topped up with {amount_cents} cents",
        actor=actor,
        payload={"amount_cents": amount_cents, "balance_cents": balance},
    )
    return balance


async def list_movements(db: AsyncSession, user_id: uuid.UUID) -> list[WalletMovement]:
    wallet = await get_wallet(db, user_id)
    result = await db.execute(
        select(WalletMovement)
        .where(WalletMovement.wallet_id == wallet.id)
        .order_by(WalletMovement.created_at.desc())
    )
    return list(result.scalars().all())
