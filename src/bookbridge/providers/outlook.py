"""Microsoft Graph (Outlook) calendar client."""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
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

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
MICROSOFT_LOGIN_BASE_URL = "https://login.microsoftonline.com"
GRAPH_MAX_PAGE_SIZE = 100

# Graph returns local times without an offset; ask for UTC on every read.
_PREFER_UTC = {"Prefer": 'outlook.timezone="UTC"'}

# Graph emits up to seven fractional digits; datetime accepts six.
_FRACTION_PATTERN = re.compile(r"\.(\d{6})\d+")

_SHOW_AS_TO_GRAPH = {
    FreeBusyStatus.free: "free",
    FreeBusyStatus.tentative: "tentative",
    FreeBusyStatus.busy: "busy",
    FreeBusyStatus.oof: "oof",
    FreeBusyStatus.working_elsewhere: "workingElsewhere",
    FreeBusyStatus.unknown: "unknown",
}
_GRAPH_TO_SHOW_AS = {value: key for key, value in _SHOW_AS_TO_GRAPH.items()}

_GRAPH_RESPONSE_STATUS = {
    "none": AttendeeResponseStatus.needs_action,
    "notResponded": AttendeeResponseStatus.needs_action,
    "organizer": AttendeeResponseStatus.organizer,
    "tentativelyAccepted": AttendeeResponseStatus.tentative,
    "accepted": AttendeeResponseStatus.accepted,
    "declined": AttendeeResponseStatus.declined,
}

_ORDER_BY = {
    "startTime": "start/dateTime",
    "updated": "lastModifiedDateTime desc",
}


def _graph_datetime(value: datetime) -> str:
    """UTC wall-clock string as used in Graph query parameters."""
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).replace(tzinfo=None).isoformat(timespec="seconds")


def _parse_graph_boundary(payload: Any, fallback_timezone: str) -> tuple[datetime, str]:
    if not isinstance(payload, dict):
        raise ValueError("Outlook event is missing start/end payloads")
    raw = payload.get("dateTime")
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError("Outlook event boundary is missing dateTime")
    timezone = payload.get("timeZone") if isinstance(payload.get("timeZone"), str) else None
    timezone = (timezone or fallback_timezone).strip()

    normalized = _FRACTION_PATTERN.sub(r".\1", raw.strip())
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Microsoft Graph returned an invalid dateTime: {raw}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=coerce_zoneinfo(timezone))
    return parsed, timezone


def _text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _extract_graph_attendees(payload: Any) -> list[Attendee]:
    if not isinstance(payload, list):
        return []
    attendees: list[Attendee] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email_address = entry.get("emailAddress") or {}
        email = _text(email_address.get("address"))
        if email is None:
            continue
        response = (entry.get("status") or {}).get("response")
        attendees.append(
            Attendee(
                email=email,
                name=_text(email_address.get("name")),
                response_status=_GRAPH_RESPONSE_STATUS.get(
                    response, AttendeeResponseStatus.needs_action
                ),
            )
        )
    return attendees


def _outlook_event_to_calendar_event(payload: dict[str, Any]) -> CalendarEvent:
    event_id = _text(payload.get("id"))
    if event_id is None:
        raise ValueError("Outlook event payload is missing a non-empty id")

    start_at, timezone = _parse_graph_boundary(payload.get("start"), "UTC")
    end_at, _ = _parse_graph_boundary(payload.get("end"), timezone)

    show_as = _GRAPH_TO_SHOW_AS.get(payload.get("showAs"), FreeBusyStatus.busy)
    if payload.get("isCancelled") is True:
        status = EventStatus.cancelled
    elif show_as in (FreeBusyStatus.tentative, FreeBusyStatus.free):
        status = EventStatus.tentative
    else:
        status = EventStatus.confirmed

    body = payload.get("body") if isinstance(payload.get("body"), dict) else {}
    location = payload.get("location") if isinstance(payload.get("location"), dict) else {}
    meeting = payload.get("onlineMeeting") if isinstance(payload.get("onlineMeeting"), dict) else {}

    return CalendarEvent(
        id=event_id,
        title=_text(payload.get("subject")) or "(untitled)",
        start_at=start_at,
        end_at=end_at,
        timezone=timezone,
        description=_text(body.get("content")),
        location=_text(location.get("displayName")),
        attendees=_extract_graph_attendees(payload.get("attendees")),
        status=status,
        show_as=show_as,
        online_meeting_url=_text(meeting.get("joinUrl")) or _text(payload.get("onlineMeetingUrl")),
    )


def _graph_boundary(value: datetime, timezone: str) -> dict[str, str]:
    tz = coerce_zoneinfo(timezone)
    localized = value.replace(tzinfo=tz) if value.tzinfo is None else value.astimezone(tz)
    return {
        "dateTime": localized.replace(tzinfo=None).isoformat(timespec="seconds"),
        "timeZone": timezone,
    }


def _attendees_to_graph(attendees: list[Attendee]) -> list[dict[str, Any]]:
    return [
        {
            "emailAddress": {"address": attendee.email, "name": attendee.name or attendee.email},
            "type": "required",
        }
        for attendee in attendees
    ]


def _build_outlook_event_body(payload: CalendarEventCreate) -> dict[str, Any]:
    body: dict[str, Any] = {
        "subject": payload.title,
        "start": _graph_boundary(payload.start_at, payload.timezone),
        "end": _graph_boundary(payload.end_at, payload.timezone),
        "showAs": _SHOW_AS_TO_GRAPH[payload.show_as],
    }
    if payload.description is not None:
        body["body"] = {"contentType": "text", "content": payload.description}
    if payload.location is not None:
        body["location"] = {"displayName": payload.location}
    if payload.attendees:
        body["attendees"] = _attendees_to_graph(payload.attendees)
    if payload.create_online_meeting:
        body["isOnlineMeeting"] = True
        body["onlineMeetingProvider"] = "teamsForBusiness"
    return body


def _build_outlook_event_patch_body(
    patch: CalendarEventUpdate,
    *,
    existing: CalendarEvent | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {}
    if patch.title is not None:
        body["subject"] = patch.title
    if patch.description is not None:
        body["body"] = {"contentType": "text", "content": patch.description}
    if patch.location is not None:
        body["location"] = {"displayName": patch.location}
    if patch.show_as is not None:
        body["showAs"] = _SHOW_AS_TO_GRAPH[patch.show_as]
    if patch.attendees is not None:
        body["attendees"] = _attendees_to_graph(patch.attendees)

    timezone = patch.timezone or (existing.timezone if existing else "UTC")
    start_at = patch.start_at or (existing.start_at if existing and patch.timezone else None)
    end_at = patch.end_at or (existing.end_at if existing and patch.timezone else None)
    if start_at is not None:
        body["start"] = _graph_boundary(start_at, timezone)
    if end_at is not None:
        body["end"] = _graph_boundary(end_at, timezone)
    return body


class OutlookCalendarClient(CalendarProviderClient):
    """Microsoft Graph v1.0 calendar provider."""

    provider: ClassVar[CalendarProviderName] = CalendarProviderName.outlook
    api_base_url: ClassVar[str] = GRAPH_API_BASE_URL
    scopes: ClassVar[tuple[str, ...]] = (
        "https://graph.microsoft.com/Calendars.ReadWrite",
        "https://graph.microsoft.com/User.Read",
        "offline_access",
    )

    @property
    def token_url(self) -> str:
        return f"{MICROSOFT_LOGIN_BASE_URL}/{self._oauth.authority}/oauth2/v2.0/token"

    @property
    def authorize_url(self) -> str:
        return f"{MICROSOFT_LOGIN_BASE_URL}/{self._oauth.authority}/oauth2/v2.0/authorize"

    def _extra_authorization_params(self) -> dict[str, str]:
        return {"response_mode": "query"}

    def _extra_token_params(self) -> dict[str, str]:
        return {"scope": " ".join(self.scopes)}

    @staticmethod
    def _calendar_path(calendar_id: str) -> str:
        if calendar_id == "primary":
            return "/me"
        return f"/me/calendars/{quote(calendar_id, safe='')}"

    def _event_path(self, calendar_id: str, event_id: str) -> str:
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")
        return f"{self._calendar_path(calendar_id)}/events/{quote(normalized_event_id, safe='')}"

    async def list_events(
        self,
        calendar_id: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        max_results: int | None = None,
        order_by: str = "startTime",
    ) -> list[CalendarEvent]:
        """List events, following ``@odata.nextLink`` until *max_results*.

        With both bounds set the calendar view is used, which expands recurring
        series and returns every event overlapping the window.
        """
        if max_results is not None and max_results < 1:
            raise ValueError("max_results must be at least 1")

        params: dict[str, Any] = {"$orderby": _ORDER_BY.get(order_by, order_by)}
        page_size = min(max_results or GRAPH_MAX_PAGE_SIZE, GRAPH_MAX_PAGE_SIZE)
        params["$top"] = page_size

        if time_min is not None and time_max is not None:
            path = f"{self._calendar_path(calendar_id)}/calendarView"
            params["startDateTime"] = _graph_datetime(time_min)
            params["endDateTime"] = _graph_datetime(time_max)
        else:
            path = f"{self._calendar_path(calendar_id)}/events"
            filters: list[str] = []
            if time_min is not None:
                filters.append(f"end/dateTime ge '{_graph_datetime(time_min)}'")
            if time_max is not None:
                filters.append(f"start/dateTime lt '{_graph_datetime(time_max)}'")
            if filters:
                params["$filter"] = " and ".join(filters)

        events: list[CalendarEvent] = []
        next_url: str | None = path
        next_params: dict[str, Any] | None = params
        while next_url:
            payload = await self._request_json(
                "GET", next_url, params=next_params, extra_headers=_PREFER_UTC
            )
            items = payload.get("value")
            if not isinstance(items, list):
                raise ProviderAPIError(
                    status_code=200,
                    body="list_events response missing value array",
                    provider=self.provider.value,
                )
            for item in items:
                if isinstance(item, dict):
                    events.append(_outlook_event_to_calendar_event(item))
            if max_results is not None and len(events) >= max_results:
                break
            # nextLink already carries every query parameter
            next_url = _text(payload.get("@odata.nextLink"))
            next_params = None

        return events[:max_results] if max_results is not None else events

    async def get_event(self, calendar_id: str, event_id: str) -> CalendarEvent | None:
        response = await self._request(
            "GET", self._event_path(calendar_id, event_id), extra_headers=_PREFER_UTC
        )
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        return _outlook_event_to_calendar_event(self._decode_json(response))

    async def create_event(self, calendar_id: str, event: CalendarEventCreate) -> CalendarEvent:
        payload = await self._request_json(
            "POST",
            f"{self._calendar_path(calendar_id)}/events",
            json_body=_build_outlook_event_body(event),
            extra_headers=_PREFER_UTC,
        )
        return _outlook_event_to_calendar_event(payload)

    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        patch: CalendarEventUpdate,
    ) -> CalendarEvent:
        existing: CalendarEvent | None = None
        if patch.timezone is not None and (patch.start_at is None or patch.end_at is None):
            existing = await self.get_event(calendar_id, event_id)
        payload = await self._request_json(
            "PATCH",
            self._event_path(calendar_id, event_id),
            json_body=_build_outlook_event_patch_body(patch, existing=existing),
            extra_headers=_PREFER_UTC,
        )
        return _outlook_event_to_calendar_event(payload)

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        response = await self._request("DELETE", self._event_path(calendar_id, event_id))
        if response.status_code in (404, 410):
            logger.debug(
                "delete_event: event '%s' not found (already deleted); treating as success",
                event_id,
            )
            return
        self._raise_for_status(response)

    async def list_calendars(self) -> list[ProviderCalendar]:
        payload = await self._request_json("GET", "/me/calendars")
        calendars: list[ProviderCalendar] = []
        for item in payload.get("value") or []:
            calendar_id = _text(item.get("id")) if isinstance(item, dict) else None
            if calendar_id is None:
                continue
            calendars.append(
                ProviderCalendar(
                    id=calendar_id,
                    name=_text(item.get("name")) or calendar_id,
                    is_default=item.get("isDefaultCalendar") is True,
                )
            )
        return calendars

    async def _health_probe(self) -> None:
        profile = await self._request_json("GET", "/me")
        if not _text(profile.get("id")):
            raise ProviderAPIError(
                status_code=200,
                body="Invalid response from Microsoft Graph API",
                provider=self.provider.value,
            )
