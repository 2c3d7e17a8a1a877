"""Pydantic v2 request/response schemas for charges, refunds and the ledger."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from matchpoint.models.enums import LedgerDirection, LedgerStatus, PaymentMethod


class ChargeRequest(BaseModel):
    method: PaymentMethod
    amount_cents: int = Field(..., ge=0)


class RefundRequest(BaseModel):
    amount_cents: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=500)


class LedgerResultResponse(BaseModel):
    """Outcome of a charge or refund.

    ``client_secret`` (CARD) and ``redirect_url`` (BIZUM) are returned while
    the entry is PENDING so the client can complete the payment.
    """

    entry_id: uuid.UUID
    reservation_id: uuid.UUID
    direction: LedgerDirection
    method: PaymentMethod
    status: LedgerStatus
    amount_cents: int
    external_reference: str | None = None
    client_secret: str | None = None
    redirect_url: str | None = None
    failure_reason: str | None = None
    retryable: bool = False

    model_config = ConfigDict(from_attributes=True)


class LedgerEntryResponse(BaseModel):
    id: uuid.UUID
    reservation_id: uuid.UUID
    direction: LedgerDirection
    method: PaymentMethod
    status: LedgerStatus
    amount_cents: int
    external_reference: str | None = None
    actor: str | None = None
    reason: str | None = None
    failure_reason: str | None = None
    retryable: bool
    created_at: datetime
    finalized_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class LedgerResponse(BaseModel):
    entries: list[LedgerEntryResponse]
    net_paid_cents: int
    refundable_cents: int


class BizumCallback(BaseModel):
    """Signed notification posted by the Bizum gateway."""

    order: str = Field(..., min_length=1, max_length=12)
    amount_cents: int = Field(..., ge=0)
    status: str
    signature: str
