"""Request bodies for the tenant calendar endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, field_validator, model_validator

from bookbridge.models import BookingRequest, CalendarProviderName, ensure_valid_timezone


class AvailabilityRequest(BaseModel):
    """Window to check across every active connection of a tenant.

    Naive datetimes are read in ``timezone`` (or the engine default).
    """

    start: datetime
    end: datetime
    timezone: str | None = None

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str | None) -> str | None:
        return ensure_valid_timezone(value) if value is not None else None

    @model_validator(mode="after")
    def _check_window(self) -> AvailabilityRequest:
        if (self.start.tzinfo is None) != (self.end.tzinfo is None):
            raise ValueError("start and end must both be naive or both carry an offset")
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class BookingRequestBody(BookingRequest):
    """A booking request plus an optional provider to prefer when writing."""

    preferred_provider: CalendarProviderName | None = None
