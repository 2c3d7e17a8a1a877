"""Pydantic v2 request/response schemas for reservation endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from matchpoint.models.enums import PaymentMethod, PaymentStatus, ReservationStatus

# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class ReservationCreate(BaseModel):
    """Schema for booking a court slot.

    ``user_id`` defaults to the caller; staff may book on behalf of others
    and add a reasoned price override.
    """

    court_id: uuid.UUID
    starts_at: datetime
    duration_minutes: int = Field(..., ge=1)
    user_id: uuid.UUID | None = None
    payment_method: PaymentMethod | None = None
    promo_code: str | None = Field(None, max_length=50)
    override_delta_cents: int | None = None
    override_reason: str | None = Field(None, max_length=500)

    @field_validator("starts_at")
    @classmethod
    def require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("starts_at must include a timezone offset")
        return value

    @model_validator(mode="after")
    def check_override(self) -> "ReservationCreate":
        """An override always travels with its reason."""
        if self.override_delta_cents and not (self.override_reason or "").strip():
            raise ValueError("override_reason is required with override_delta_cents")
        return self


class CancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class ReservationResponse(BaseModel):
    """Reservation as stored, including pricing provenance."""

    id: uuid.UUID
    court_id: uuid.UUID
    user_id: uuid.UUID
    starts_at: datetime
    ends_at: datetime
    status: ReservationStatus
    payment_status: PaymentStatus
    total_amount_cents: int
    payment_method: PaymentMethod | None = None
    applied_tariff_id: uuid.UUID | None = None
    applied_promo_code: str | None = None
    override_adjustment_cents: int | None = None
    override_reason: str | None = None
    created_at: datetime
    paid_at: datetime | None = None
    checked_in_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None

    model_config = ConfigDict(from_attributes=True)


class PriceBreakdownResponse(BaseModel):
    base_cents: Decimal
    tariff_discount_cents: Decimal
    promo_discount_cents: Decimal
    override_delta_cents: int
    final_cents: int


class BookingResponse(BaseModel):
    """Created reservation plus the quote it was priced with."""

    reservation: ReservationResponse
    price: PriceBreakdownResponse
    applied_tariff_segment: str | None = None
    pending_verification_tariff_id: uuid.UUID | None = None
