"""Tests for OutlookCalendarClient against a mocked Microsoft Graph API."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from bookbridge.config import ProviderOAuthConfig
from bookbridge.errors import AuthError, ProviderAPIError
from bookbridge.models import (
    BookingRequest,
    CalendarEventCreate,
    EventStatus,
    FreeBusyStatus,
    OAuthCredentials,
)
from bookbridge.providers.base import AuthState
from bookbridge.providers.outlook import GRAPH_API_BASE_URL, OutlookCalendarClient

pytestmark = pytest.mark.unit

OAUTH = ProviderOAuthConfig(
    client_id="outlook-client",
    client_secret="outlook-secret",
    redirect_uri="http://localhost:40300/api/oauth/outlook/callback",
    authority="organizations",
)
TOKEN_URL = "https://login.microsoftonline.com/organizations/oauth2/v2.0/token"


def _graph_event(event_id: str, start: str, end: str, **extra) -> dict:
    return {
        "id": event_id,
        "subject": "Existing appointment",
        "start": {"dateTime": start, "timeZone": "UTC"},
        "end": {"dateTime": end, "timeZone": "UTC"},
        "showAs": "busy",
        **extra,
    }


@pytest.fixture
async def make_client() -> AsyncIterator[Callable[..., OutlookCalendarClient]]:
    http_clients: list[httpx.AsyncClient] = []

    def factory(handler, **kwargs) -> OutlookCalendarClient:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        http_clients.append(http_client)
        return OutlookCalendarClient(
            OAUTH,
            credentials=OAuthCredentials(access_token="tok-0", refresh_token="rtok"),
            http_client=http_client,
            **kwargs,
        )

    yield factory
    for http_client in http_clients:
        await http_client.aclose()


class TestOAuth:
    async def test_authorization_url_uses_tenant_authority(self, make_client):
        client = make_client(lambda request: httpx.Response(200))
        parsed = urlparse(client.authorization_url("xyz"))
        params = parse_qs(parsed.query)

        assert parsed.path == "/organizations/oauth2/v2.0/authorize"
        assert params["response_mode"] == ["query"]
        assert "offline_access" in params["scope"][0].split()

    async def test_refresh_sends_scope(self, make_client):
        token_forms: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == TOKEN_URL:
                token_forms.append(parse_qs(request.content.decode()))
                return httpx.Response(200, json={"access_token": "tok-1"})
            if request.headers["Authorization"] == "Bearer tok-0":
                return httpx.Response(401)
            return httpx.Response(200, json={"id": "user-1"})

        client = make_client(handler)
        health = await client.health_check()

        assert health.status == "healthy"
        assert token_forms[0]["grant_type"] == ["refresh_token"]
        assert "https://graph.microsoft.com/Calendars.ReadWrite" in token_forms[0]["scope"][0]

    async def test_rejected_refresh_is_not_retried(self, make_client):
        calls = {"token": 0, "api": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == TOKEN_URL:
                calls["token"] += 1
                return httpx.Response(
                    400,
                    json={"error": "invalid_grant", "error_description": "AADSTS70008 expired"},
                )
            calls["api"] += 1
            return httpx.Response(401)

        client = make_client(handler)
        with pytest.raises(AuthError, match="invalid_grant"):
            await client.list_events("primary")
        assert client.state is AuthState.auth_failed
        assert calls == {"token": 1, "api": 1}

        with pytest.raises(AuthError, match="re-authentication required"):
            await client.list_events("primary")
        assert calls == {"token": 1, "api": 1}


class TestListEvents:
    async def test_bounded_listing_uses_calendar_view(self, make_client):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"value": []})

        client = make_client(handler)
        await client.list_events(
            "primary",
            time_min=datetime(2026, 3, 2, 9, tzinfo=UTC),
            time_max=datetime(2026, 3, 2, 17, tzinfo=UTC),
        )

        request = requests[0]
        assert request.url.path == "/v1.0/me/calendarView"
        assert request.url.params["startDateTime"] == "2026-03-02T09:00:00"
        assert request.url.params["endDateTime"] == "2026-03-02T17:00:00"
        assert request.url.params["$orderby"] == "start/dateTime"
        assert request.headers["Prefer"] == 'outlook.timezone="UTC"'

    async def test_named_calendar_path_is_quoted(self, make_client):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"value": []})

        client = make_client(handler)
        await client.list_events("AAMk/staff=")

        assert requests[0].url.path.endswith("/events")
        assert b"/me/calendars/AAMk%2Fstaff" in requests[0].url.raw_path

    async def test_follows_next_link(self, make_client):
        next_link = f"{GRAPH_API_BASE_URL}/me/calendarView?$skip=1"
        urls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            urls.append(str(request.url))
            if "skip" in str(request.url):
                return httpx.Response(
                    200,
                    json={
                        "value": [
                            _graph_event("e2", "2026-03-02T11:00:00", "2026-03-02T12:00:00")
                        ]
                    },
                )
            return httpx.Response(
                200,
                json={
                    "value": [_graph_event("e1", "2026-03-02T09:00:00", "2026-03-02T10:00:00")],
                    "@odata.nextLink": next_link,
                },
            )

        client = make_client(handler)
        events = await client.list_events(
            "primary",
            time_min=datetime(2026, 3, 2, tzinfo=UTC),
            time_max=datetime(2026, 3, 3, tzinfo=UTC),
        )

        assert [event.id for event in events] == ["e1", "e2"]
        assert len(urls) == 2
        assert "skip" in urls[1]

    async def test_event_mapping(self, make_client):
        items = [
            _graph_event(
                "precise",
                "2026-03-02T09:00:00.0000000",
                "2026-03-02T09:30:00.0000000",
                body={"contentType": "text", "content": "Colour"},
                location={"displayName": "Chair 2"},
                onlineMeeting={"joinUrl": "https://teams.example/join"},
                attendees=[
                    {
                        "emailAddress": {"address": "jane@example.com", "name": "Jane"},
                        "status": {"response": "accepted"},
                    }
                ],
            ),
            _graph_event("free", "2026-03-02T10:00:00", "2026-03-02T11:00:00", showAs="free"),
            _graph_event("ooo", "2026-03-02T12:00:00", "2026-03-02T13:00:00", showAs="oof"),
            _graph_event(
                "cancelled", "2026-03-02T14:00:00", "2026-03-02T15:00:00", isCancelled=True
            ),
        ]
        client = make_client(lambda request: httpx.Response(200, json={"value": items}))
        precise, free, ooo, cancelled = await client.list_events("primary")

        assert precise.start_at == datetime(2026, 3, 2, 9, tzinfo=UTC)
        assert precise.description == "Colour"
        assert precise.location == "Chair 2"
        assert precise.online_meeting_url == "https://teams.example/join"
        assert precise.attendees[0].response_status.value == "accepted"
        assert free.show_as is FreeBusyStatus.free
        assert not free.blocks_time
        assert ooo.show_as is FreeBusyStatus.oof
        assert ooo.blocks_time
        assert cancelled.status is EventStatus.cancelled
        assert not cancelled.blocks_time

    async def test_missing_value_array(self, make_client):
        client = make_client(lambda request: httpx.Response(200, json={"items": []}))
        with pytest.raises(ProviderAPIError, match="missing value array"):
            await client.list_events("primary")


class TestWrites:
    async def test_create_event_body(self, make_client):
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            body = json.loads(request.content)
            return httpx.Response(
                201,
                json={
                    "id": "graph-1",
                    "subject": body["subject"],
                    "start": {"dateTime": "2026-03-02T09:00:00", "timeZone": "UTC"},
                    "end": {"dateTime": "2026-03-02T10:00:00", "timeZone": "UTC"},
                    "showAs": body["showAs"],
                },
            )

        client = make_client(handler)
        event = await client.create_event(
            "primary",
            CalendarEventCreate(
                title="Haircut - Jane Doe",
                start_at=datetime(2026, 3, 2, 10, 0),
                end_at=datetime(2026, 3, 2, 11, 0),
                timezone="Europe/Berlin",
                description="Service: Haircut",
                create_online_meeting=True,
            ),
        )

        request = captured[0]
        body = json.loads(request.content)
        assert request.url.path == "/v1.0/me/events"
        assert body["start"] == {"dateTime": "2026-03-02T10:00:00", "timeZone": "Europe/Berlin"}
        assert body["showAs"] == "busy"
        assert body["body"] == {"contentType": "text", "content": "Service: Haircut"}
        assert body["isOnlineMeeting"] is True
        assert event.id == "graph-1"
        assert event.start_at == datetime(2026, 3, 2, 9, tzinfo=UTC)

    async def test_booking_conflict_offers_alternatives(self, make_client):
        methods: list[str] = []
        busy = _graph_event("busy", "2026-03-02T10:00:00", "2026-03-02T10:30:00")

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            return httpx.Response(200, json={"value": [busy]})

        client = make_client(handler, max_alternatives=3)
        result = await client.create_booking(
            "primary",
            BookingRequest.model_validate(
                {
                    "service": {"name": "Beard trim", "duration_minutes": 30},
                    "customer": {"name": "Sam", "email": "sam@example.com"},
                    "preferred_datetime": datetime(2026, 3, 2, 10, tzinfo=UTC),
                }
            ),
        )

        assert not result.success
        assert set(methods) == {"GET"}
        assert [slot.start.hour for slot in result.alternatives or []] == [10, 11, 11]
        assert result.alternatives[0].start == datetime(2026, 3, 2, 10, 30, tzinfo=UTC)

    @pytest.mark.parametrize("status", [404, 410])
    async def test_delete_missing_event_succeeds(self, make_client, status):
        client = make_client(lambda request: httpx.Response(status))
        await client.delete_event("staff-cal", "evt-1")

    async def test_get_event_not_found(self, make_client):
        client = make_client(lambda request: httpx.Response(404))
        assert await client.get_event("primary", "evt-1") is None


class TestDiscovery:
    async def test_list_calendars(self, make_client):
        payload = {
            "value": [
                {"id": "AAMk-1", "name": "Calendar", "isDefaultCalendar": True},
                {"id": "AAMk-2", "name": "Anna"},
            ]
        }
        client = make_client(lambda request: httpx.Response(200, json=payload))
        calendars = await client.list_calendars()
        assert [(c.id, c.name, c.is_default) for c in calendars] == [
            ("AAMk-1", "Calendar", True),
            ("AAMk-2", "Anna", False),
        ]

    async def test_health_requires_profile_id(self, make_client):
        client = make_client(lambda request: httpx.Response(200, json={}))
        health = await client.health_check()
        assert health.status == "error"
        assert "Invalid response" in (health.details or "")
