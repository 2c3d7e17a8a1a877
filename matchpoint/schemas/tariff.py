"""Pydantic v2 request/response schemas for tariffs and enrollments."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from matchpoint.models.enums import EnrollmentDecision, EnrollmentStatus

# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class TariffCreate(BaseModel):
    segment: str = Field(..., min_length=1, max_length=50)
    description: str | None = None
    min_age: int = Field(..., ge=0)
    max_age: int | None = Field(None, ge=0)
    discount_percent: Decimal = Field(..., ge=0, le=100)
    requires_manual_approval: bool = True
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    court_ids: list[uuid.UUID] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_ranges(self) -> "TariffCreate":
        if self.max_age is not None and self.max_age < self.min_age:
            raise ValueError("max_age must be greater than or equal to min_age")
        if self.valid_from and self.valid_until and self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        return self


class EnrollmentCreate(BaseModel):
    tariff_id: uuid.UUID
    notes: str | None = Field(None, max_length=1000)


class EnrollmentDecisionRequest(BaseModel):
    """Staff verdict; a rejection uses ``notes`` as its reason."""

    decision: EnrollmentDecision
    notes: str | None = Field(None, max_length=1000)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class TariffResponse(BaseModel):
    id: uuid.UUID
    segment: str
    description: str | None = None
    min_age: int
    max_age: int | None = None
    discount_percent: Decimal
    requires_manual_approval: bool
    valid_from: datetime
    valid_until: datetime | None = None
    is_active: bool
    court_ids: list[uuid.UUID] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class ApplicableTariffResponse(BaseModel):
    applied: TariffResponse | None = None
    pending_verification: TariffResponse | None = None
    discount_percent: Decimal


class EnrollmentResponse(BaseModel):
    id: uuid.UUID
    tariff_id: uuid.UUID
    user_id: uuid.UUID
    status: EnrollmentStatus
    requested_at: datetime
    decided_at: datetime | None = None
    decided_by: uuid.UUID | None = None
    notes: str | None = None

    model_config = ConfigDict(from_attributes=True)
