"""Pydantic v2 schemas for court availability and maintenance windows."""

import uuid
from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from matchpoint.models.enums import SlotStatus


class SlotResponse(BaseModel):
    starts_at: datetime
    ends_at: datetime
    status: SlotStatus

    model_config = ConfigDict(from_attributes=True)


class AvailabilityResponse(BaseModel):
    court_id: uuid.UUID
    date: date
    duration_minutes: int
    slots: list[SlotResponse]


class MaintenanceCreate(BaseModel):
    court_id: uuid.UUID
    starts_at: datetime
    ends_at: datetime
    reason: str = Field(..., min_length=1, max_length=500)

    @model_validator(mode="after")
    def check_interval(self) -> "MaintenanceCreate":
        if self.starts_at.tzinfo is None or self.ends_at.tzinfo is None:
            raise ValueError("times must include a timezone offset")
        if self.ends_at <= self.starts_at:
            raise ValueError("ends_at must be after starts_at")
        return self


class MaintenanceResponse(BaseModel):
    id: uuid.UUID
    court_id: uuid.UUID
    starts_at: datetime
    ends_at: datetime
    reason: str
    created_by: uuid.UUID | None = None

    model_config = ConfigDict(from_attributes=True)


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str
