"""Unified calendar data model shared by providers, the orchestrator and the API.

Provider clients translate their native JSON into these shapes; the
orchestrator only ever sees ``CalendarEvent`` / ``AvailabilitySlot`` and the
unified variants built from them.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, tzinfo
from enum import StrEnum
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

DEFAULT_TIMEZONE = "Europe/Berlin"


class CalendarProviderName(StrEnum):
    """External calendar services a connection can be bound to."""

    google = "google"
    outlook = "outlook"


class EventStatus(StrEnum):
    """Event lifecycle states as tracked by the provider."""

    tentative = "tentative"
    confirmed = "confirmed"
    cancelled = "cancelled"


class FreeBusyStatus(StrEnum):
    """How an event occupies time. Only ``free`` leaves the slot bookable."""

    free = "free"
    tentative = "tentative"
    busy = "busy"
    oof = "oof"
    working_elsewhere = "working_elsewhere"
    unknown = "unknown"


class AttendeeResponseStatus(StrEnum):
    needs_action = "needsAction"
    accepted = "accepted"
    declined = "declined"
    tentative = "tentative"
    organizer = "organizer"


def coerce_zoneinfo(timezone: str) -> tzinfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def ensure_valid_timezone(value: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError("timezone must be a non-empty IANA timezone name")
    try:
        ZoneInfo(normalized)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {normalized}") from exc
    return normalized


def as_aware(value: datetime, timezone: str = "UTC") -> datetime:
    """Attach *timezone* to naive datetimes; aware values are returned unchanged."""
    if value.tzinfo is not None:
        return value
    return value.replace(tzinfo=coerce_zoneinfo(timezone))


def to_utc(value: datetime, timezone: str = "UTC") -> datetime:
    return as_aware(value, timezone).astimezone(UTC)


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


class OAuthCredentials(BaseModel):
    """Access/refresh token pair for one connection."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str | None = None

    @field_validator("refresh_token")
    @classmethod
    def _blank_refresh_is_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class CalendarConnection(BaseModel):
    """One tenant's binding to one external calendar."""

    id: str = ""
    provider: CalendarProviderName
    calendar_id: str = Field(min_length=1)
    name: str
    staff_member: str | None = None
    credentials: OAuthCredentials
    is_primary: bool = False
    active: bool = True
    timezone: str = DEFAULT_TIMEZONE

    @model_validator(mode="after")
    def _default_id(self) -> CalendarConnection:
        if not self.id:
            self.id = f"{self.provider.value}:{self.calendar_id}"
        return self


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------


class AvailabilitySlot(BaseModel):
    """A fixed-duration ``[start, end)`` window on one calendar."""

    start: datetime
    end: datetime
    available: bool
    provider: CalendarProviderName
    calendar_id: str
    staff_member: str | None = None

    @property
    def key(self) -> tuple[datetime, datetime]:
        return (self.start, self.end)


class SlotSource(BaseModel):
    """One calendar's contribution to a merged slot."""

    provider: CalendarProviderName
    calendar_id: str
    staff_member: str | None = None
    available: bool


class UnifiedAvailabilitySlot(AvailabilitySlot):
    """A slot merged across every queried connection of a tenant.

    ``available`` is true only when every source reports the window free.
    """

    sources: list[SlotSource] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class Attendee(BaseModel):
    email: str
    name: str | None = None
    response_status: AttendeeResponseStatus = AttendeeResponseStatus.needs_action


class CalendarEvent(BaseModel):
    """Canonical event shape shared across provider implementations."""

    id: str
    title: str
    start_at: datetime
    end_at: datetime
    timezone: str
    description: str | None = None
    location: str | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    status: EventStatus = EventStatus.confirmed
    show_as: FreeBusyStatus = FreeBusyStatus.busy
    online_meeting_url: str | None = None

    @property
    def blocks_time(self) -> bool:
        return self.status != EventStatus.cancelled and self.show_as != FreeBusyStatus.free


class UnifiedCalendarEvent(CalendarEvent):
    """A provider event tagged with the connection it came from."""

    provider: CalendarProviderName
    calendar_id: str
    connection_id: str


class CalendarEventCreate(BaseModel):
    """Payload for creating an event on a provider calendar."""

    title: str = Field(min_length=1)
    start_at: datetime
    end_at: datetime
    timezone: str = "UTC"
    description: str | None = None
    location: str | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    status: EventStatus = EventStatus.confirmed
    show_as: FreeBusyStatus = FreeBusyStatus.busy
    create_online_meeting: bool = False

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        return ensure_valid_timezone(value)

    @model_validator(mode="after")
    def _validate_window(self) -> CalendarEventCreate:
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        return self


class CalendarEventUpdate(BaseModel):
    """Partial update; ``None`` fields are left untouched."""

    title: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    timezone: str | None = None
    description: str | None = None
    location: str | None = None
    attendees: list[Attendee] | None = None
    status: EventStatus | None = None
    show_as: FreeBusyStatus | None = None

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return ensure_valid_timezone(value)


def to_unified_event(event: CalendarEvent, connection: CalendarConnection) -> UnifiedCalendarEvent:
    return UnifiedCalendarEvent(
        **event.model_dump(),
        provider=connection.provider,
        calendar_id=connection.calendar_id,
        connection_id=connection.id,
    )


# ---------------------------------------------------------------------------
# Booking requests
# ---------------------------------------------------------------------------


class ServiceInfo(BaseModel):
    name: str = Field(min_length=1)
    duration_minutes: int = Field(gt=0)
    staff_member: str | None = None


class CustomerInfo(BaseModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone: str | None = None


class BookingRequest(BaseModel):
    """A requested appointment. Consumed once, never stored."""

    service: ServiceInfo
    customer: CustomerInfo
    preferred_datetime: datetime
    timezone: str = DEFAULT_TIMEZONE
    notes: str | None = None
    send_invites: bool = False
    create_online_meeting: bool = False

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        return ensure_valid_timezone(value)

    @field_validator("notes")
    @classmethod
    def _normalize_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    def requested_window(self) -> tuple[datetime, datetime]:
        """Exact ``[start, end)`` in UTC; naive datetimes are read in ``timezone``."""
        start = to_utc(self.preferred_datetime, self.timezone)
        return start, start + timedelta(minutes=self.service.duration_minutes)


# The unified request carries the same fields; kept as a distinct name for
# the engine's public API.
UnifiedBookingRequest = BookingRequest


# ---------------------------------------------------------------------------
# Tenant configuration (consumed as opaque input)
# ---------------------------------------------------------------------------


class BusinessHours(BaseModel):
    start: str = "09:00"
    end: str = "18:00"
    available: bool = True

    @field_validator("start", "end")
    @classmethod
    def _validate_clock(cls, value: str, info: ValidationInfo) -> str:
        parts = value.strip().split(":")
        if len(parts) != 2 or not all(part.isdigit() for part in parts):
            raise ValueError(f"{info.field_name} must be formatted as HH:MM")
        hours, minutes = int(parts[0]), int(parts[1])
        if not (0 <= hours <= 24 and 0 <= minutes < 60) or (hours == 24 and minutes):
            raise ValueError(f"{info.field_name} is not a valid time of day")
        return f"{hours:02d}:{minutes:02d}"

    def minutes_range(self) -> tuple[int, int]:
        start_h, start_m = (int(p) for p in self.start.split(":"))
        end_h, end_m = (int(p) for p in self.end.split(":"))
        return start_h * 60 + start_m, end_h * 60 + end_m


class BookingPreferences(BaseModel):
    """Per-tenant booking settings.

    Only ``business_hours`` and ``timezone`` shape alternative slots.  The
    remaining fields are carried as opaque tenant config for callers.
    """

    default_duration: int = 60
    buffer_time_minutes: int = 0
    business_hours: dict[str, BusinessHours] = Field(default_factory=dict)
    timezone: str = DEFAULT_TIMEZONE
    auto_confirm_bookings: bool = True
    send_reminders: bool = False

    @field_validator("business_hours")
    @classmethod
    def _normalize_weekdays(cls, value: dict[str, BusinessHours]) -> dict[str, BusinessHours]:
        return {day.strip().lower(): hours for day, hours in value.items()}


class SalonCalendarConfig(BaseModel):
    """All calendar connections and booking preferences of one tenant."""

    salon_id: str
    connections: list[CalendarConnection] = Field(default_factory=list)
    booking_preferences: BookingPreferences = Field(default_factory=BookingPreferences)

    @property
    def active_connections(self) -> list[CalendarConnection]:
        return [conn for conn in self.connections if conn.active]


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

HealthStatus = Literal["healthy", "error"]
OverallHealthStatus = Literal["healthy", "degraded", "error"]


class OperationError(BaseModel):
    """Structured error returned to callers instead of raw exception text."""

    kind: str
    message: str
    error_type: str | None = None
    context: dict[str, str] = Field(default_factory=dict)


class BookingResult(BaseModel):
    success: bool
    event: CalendarEvent | None = None
    error: OperationError | None = None
    alternatives: list[AvailabilitySlot] | None = None


class UnifiedBookingResult(BaseModel):
    success: bool
    event: UnifiedCalendarEvent | None = None
    error: OperationError | None = None
    alternatives: list[UnifiedAvailabilitySlot] | None = None


class CancelResult(BaseModel):
    success: bool
    error: OperationError | None = None


class ProviderHealth(BaseModel):
    status: HealthStatus
    details: str | None = None


class ConnectionHealth(BaseModel):
    connection_id: str
    provider: CalendarProviderName
    calendar_id: str
    status: HealthStatus
    details: str | None = None


class TenantHealthReport(BaseModel):
    overall_status: OverallHealthStatus
    connections: list[ConnectionHealth] = Field(default_factory=list)


class TokenGrant(BaseModel):
    access_token: str
    refresh_token: str | None = None
    expires_in: int = 3600
    token_type: str = "Bearer"


class ProviderCalendar(BaseModel):
    id: str
    name: str
    time_zone: str | None = None
    is_default: bool = False
