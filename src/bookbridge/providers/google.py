"""Google Calendar v3 client."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, date, datetime
from typing import Any, ClassVar
from urllib.parse import quote

from bookbridge.errors import ProviderAPIError
from bookbridge.models import (
    Attendee,
    AttendeeResponseStatus,
    CalendarEvent,
    CalendarEventCreate,
    CalendarEventUpdate,
    CalendarProviderName,
    EventStatus,
    FreeBusyStatus,
    ProviderCalendar,
    coerce_zoneinfo,
)
from bookbridge.providers.base import CalendarProviderClient

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_MAX_PAGE_SIZE = 250


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _parse_google_event_boundary(
    payload: dict[str, Any],
    *,
    fallback_timezone: str,
) -> tuple[datetime, str]:
    timezone = _normalize_optional_text(payload.get("timeZone")) or fallback_timezone

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time), timezone

    # All-day events carry a bare date; they start at local midnight.
    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value)
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
        return (
            datetime(
                parsed_date.year,
                parsed_date.month,
                parsed_date.day,
                tzinfo=coerce_zoneinfo(timezone),
            ),
            timezone,
        )

    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def _extract_google_attendees(payload: Any) -> list[Attendee]:
    if not isinstance(payload, list):
        return []

    attendees: list[Attendee] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = _normalize_optional_text(entry.get("email"))
        if email is None:
            continue
        response_status = AttendeeResponseStatus.needs_action
        raw_status = entry.get("responseStatus")
        if isinstance(raw_status, str):
            try:
                response_status = AttendeeResponseStatus(raw_status.strip())
            except ValueError:
                pass
        if entry.get("organizer") is True:
            response_status = AttendeeResponseStatus.organizer
        attendees.append(
            Attendee(
                email=email,
                name=_normalize_optional_text(entry.get("displayName")),
                response_status=response_status,
            )
        )
    return attendees


def _extract_google_meeting_url(payload: dict[str, Any]) -> str | None:
    hangout_link = _normalize_optional_text(payload.get("hangoutLink"))
    if hangout_link:
        return hangout_link
    conference = payload.get("conferenceData")
    if isinstance(conference, dict):
        for entry_point in conference.get("entryPoints") or []:
            if isinstance(entry_point, dict) and entry_point.get("entryPointType") == "video":
                return _normalize_optional_text(entry_point.get("uri"))
    return None


def _google_event_to_calendar_event(
    payload: dict[str, Any],
    *,
    fallback_timezone: str,
) -> CalendarEvent:
    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    start_payload = payload.get("start")
    end_payload = payload.get("end")
    if not isinstance(start_payload, dict) or not isinstance(end_payload, dict):
        raise ValueError(f"Google Calendar event '{event_id}' is missing start/end payloads")

    start_at, timezone = _parse_google_event_boundary(
        start_payload, fallback_timezone=fallback_timezone
    )
    end_at, _ = _parse_google_event_boundary(end_payload, fallback_timezone=timezone)

    status = EventStatus.confirmed
    raw_status = payload.get("status")
    if isinstance(raw_status, str):
        try:
            status = EventStatus(raw_status.strip().lower())
        except ValueError:
            pass

    # Google has no free/busy enum; transparent events do not block time.
    show_as = FreeBusyStatus.busy
    if payload.get("transparency") == "transparent":
        show_as = FreeBusyStatus.free
    elif status is EventStatus.tentative:
        show_as = FreeBusyStatus.tentative

    return CalendarEvent(
        id=event_id,
        title=_normalize_optional_text(payload.get("summary")) or "(untitled)",
        start_at=start_at,
        end_at=end_at,
        timezone=timezone,
        description=_normalize_optional_text(payload.get("description")),
        location=_normalize_optional_text(payload.get("location")),
        attendees=_extract_google_attendees(payload.get("attendees")),
        status=status,
        show_as=show_as,
        online_meeting_url=_extract_google_meeting_url(payload),
    )


def _google_boundary(value: datetime, timezone: str) -> dict[str, str]:
    tz = coerce_zoneinfo(timezone)
    localized = value.replace(tzinfo=tz) if value.tzinfo is None else value.astimezone(tz)
    return {"dateTime": localized.isoformat(), "timeZone": timezone}


def _attendees_to_google(attendees: list[Attendee]) -> list[dict[str, Any]]:
    result: list[dict[str, Any]] = []
    for attendee in attendees:
        entry: dict[str, Any] = {"email": attendee.email}
        if attendee.name is not None:
            entry["displayName"] = attendee.name
        result.append(entry)
    return result


def _build_google_event_body(payload: CalendarEventCreate) -> dict[str, Any]:
    """Translate a CalendarEventCreate payload into a Google Calendar API event body."""
    body: dict[str, Any] = {
        "summary": payload.title,
        "status": payload.status.value,
        "start": _google_boundary(payload.start_at, payload.timezone),
        "end": _google_boundary(payload.end_at, payload.timezone),
        "transparency": "transparent" if payload.show_as is FreeBusyStatus.free else "opaque",
    }
    if payload.description is not None:
        body["description"] = payload.description
    if payload.location is not None:
        body["location"] = payload.location
    if payload.attendees:
        body["attendees"] = _attendees_to_google(payload.attendees)
    if payload.create_online_meeting:
        body["conferenceData"] = {
            "createRequest": {
                "requestId": uuid.uuid4().hex,
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        }
    return body


def _build_google_event_patch_body(
    patch: CalendarEventUpdate,
    *,
    existing: CalendarEvent | None = None,
) -> dict[str, Any]:
    """Partial Google event body; only fields set on *patch* are included.

    *existing* supplies the current boundaries when only the timezone changes.
    """
    body: dict[str, Any] = {}
    if patch.title is not None:
        body["summary"] = patch.title
    if patch.description is not None:
        body["description"] = patch.description
    if patch.location is not None:
        body["location"] = patch.location
    if patch.status is not None:
        body["status"] = patch.status.value
    if patch.show_as is not None:
        body["transparency"] = "transparent" if patch.show_as is FreeBusyStatus.free else "opaque"
    if patch.attendees is not None:
        body["attendees"] = _attendees_to_google(patch.attendees)

    timezone = patch.timezone or (existing.timezone if existing else None)
    start_at = patch.start_at or (existing.start_at if existing and patch.timezone else None)
    end_at = patch.end_at or (existing.end_at if existing and patch.timezone else None)
    for key, value in (("start", start_at), ("end", end_at)):
        if value is None:
            continue
        if timezone is not None:
            body[key] = _google_boundary(value, timezone)
        else:
            body[key] = {"dateTime": _google_rfc3339(value)}
    return body


class GoogleCalendarClient(CalendarProviderClient):
    """Google Calendar v3 provider with OAuth refresh-token support."""

    provider: ClassVar[CalendarProviderName] = CalendarProviderName.google
    api_base_url: ClassVar[str] = GOOGLE_CALENDAR_API_BASE_URL
    scopes: ClassVar[tuple[str, ...]] = (
        "https://www.googleapis.com/auth/calendar",
        "https://www.googleapis.com/auth/calendar.events",
    )

    @property
    def token_url(self) -> str:
        return GOOGLE_OAUTH_TOKEN_URL

    @property
    def authorize_url(self) -> str:
        return GOOGLE_OAUTH_AUTHORIZE_URL

    def _extra_authorization_params(self) -> dict[str, str]:
        # offline access + forced consent so Google always returns a refresh token
        return {"access_type": "offline", "prompt": "consent"}

    @staticmethod
    def _events_path(calendar_id: str, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is not None:
            normalized_event_id = event_id.strip()
            if not normalized_event_id:
                raise ValueError("event_id must be a non-empty string")
            path = f"{path}/{quote(normalized_event_id, safe='')}"
        return path

    async def list_events(
        self,
        calendar_id: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        max_results: int | None = None,
        order_by: str = "startTime",
    ) -> list[CalendarEvent]:
        if max_results is not None and max_results < 1:
            raise ValueError("max_results must be at least 1")

        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": order_by,
        }
        if time_min is not None:
            params["timeMin"] = _google_rfc3339(time_min)
        if time_max is not None:
            params["timeMax"] = _google_rfc3339(time_max)

        events: list[CalendarEvent] = []
        page_token: str | None = None
        while True:
            remaining = None if max_results is None else max_results - len(events)
            params["maxResults"] = min(remaining or GOOGLE_MAX_PAGE_SIZE, GOOGLE_MAX_PAGE_SIZE)
            if page_token:
                params["pageToken"] = page_token

            payload = await self._request_json("GET", self._events_path(calendar_id), params=params)
            items = payload.get("items")
            if not isinstance(items, list):
                raise ProviderAPIError(
                    status_code=200,
                    body="list_events response missing items array",
                    provider=self.provider.value,
                )
            fallback_timezone = _normalize_optional_text(payload.get("timeZone")) or "UTC"
            for item in items:
                if isinstance(item, dict):
                    events.append(
                        _google_event_to_calendar_event(item, fallback_timezone=fallback_timezone)
                    )

            page_token = _normalize_optional_text(payload.get("nextPageToken"))
            if not page_token or (max_results is not None and len(events) >= max_results):
                break

        return events[:max_results] if max_results is not None else events

    async def get_event(self, calendar_id: str, event_id: str) -> CalendarEvent | None:
        response = await self._request("GET", self._events_path(calendar_id, event_id))
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        return _google_event_to_calendar_event(
            self._decode_json(response), fallback_timezone="UTC"
        )

    async def create_event(self, calendar_id: str, event: CalendarEventCreate) -> CalendarEvent:
        params: dict[str, Any] = {"sendUpdates": "all" if event.attendees else "none"}
        if event.create_online_meeting:
            params["conferenceDataVersion"] = 1
        payload = await self._request_json(
            "POST",
            self._events_path(calendar_id),
            params=params,
            json_body=_build_google_event_body(event),
        )
        return _google_event_to_calendar_event(payload, fallback_timezone=event.timezone)

    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        patch: CalendarEventUpdate,
    ) -> CalendarEvent:
        existing: CalendarEvent | None = None
        if patch.timezone is not None and (patch.start_at is None or patch.end_at is None):
            existing = await self.get_event(calendar_id, event_id)
        body = _build_google_event_patch_body(patch, existing=existing)
        payload = await self._request_json(
            "PATCH",
            self._events_path(calendar_id, event_id),
            json_body=body,
        )
        return _google_event_to_calendar_event(payload, fallback_timezone=patch.timezone or "UTC")

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Delete an event; 404/410 mean it is already gone and count as success."""
        response = await self._request("DELETE", self._events_path(calendar_id, event_id))
        if response.status_code in (404, 410):
            logger.debug(
                "delete_event: event '%s' not found (already deleted); treating as success",
                event_id,
            )
            return
        self._raise_for_status(response)

    async def list_calendars(self) -> list[ProviderCalendar]:
        payload = await self._request_json("GET", "/users/me/calendarList")
        calendars: list[ProviderCalendar] = []
        for item in payload.get("items") or []:
            if not isinstance(item, dict) or not _normalize_optional_text(item.get("id")):
                continue
            calendars.append(
                ProviderCalendar(
                    id=item["id"].strip(),
                    name=_normalize_optional_text(item.get("summary")) or item["id"].strip(),
                    time_zone=_normalize_optional_text(item.get("timeZone")),
                    is_default=item.get("primary") is True,
                )
            )
        return calendars

    async def _health_probe(self) -> None:
        await self._request_json("GET", "/users/me/calendarList", params={"maxResults": 1})
