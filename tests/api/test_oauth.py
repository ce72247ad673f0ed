"""Tests for the calendar connection OAuth endpoints.

Verifies the API contract for:
- GET /api/oauth/{provider}/authorize: state generation, URL building, redirect behavior
- GET /api/oauth/{provider}/callback: state validation, code exchange, registration

The callback tests swap ``CalendarOrchestrator.oauth_client`` for a Google
client on an ``httpx.MockTransport`` so no real OAuth requests are made.
"""

from __future__ import annotations

import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from bookbridge.api.routers.oauth import (
    _generate_state,
    _PendingAuthorization,
    _state_store,
    _store_state,
    _validate_and_consume_state,
)
from bookbridge.models import CalendarProviderName
from bookbridge.providers.google import GOOGLE_OAUTH_TOKEN_URL, GoogleCalendarClient

pytestmark = pytest.mark.unit

GOOGLE = CalendarProviderName.google
OUTLOOK = CalendarProviderName.outlook

_FAKE_TOKEN_RESPONSE = {
    "access_token": "ya29.fake_access_token",
    "refresh_token": "1//fake_refresh_token_xyz",
    "token_type": "Bearer",
    "expires_in": 3600,
}


@pytest.fixture
async def google_oauth(monkeypatch, orchestrator, oauth_config):
    """Route the orchestrator's OAuth client through a mock Google backend.

    Returns the mutable dict of responses the handler serves.
    """
    backend = {
        "token": httpx.Response(200, json=_FAKE_TOKEN_RESPONSE),
        "calendars": httpx.Response(
            200,
            json={
                "items": [
                    {"id": "team@group", "summary": "Team"},
                    {
                        "id": "owner@example.com",
                        "summary": "Owner",
                        "primary": True,
                        "timeZone": "Europe/Paris",
                    },
                ]
            },
        ),
        "requests": [],
    }

    def handler(request: httpx.Request) -> httpx.Response:
        backend["requests"].append(request)
        if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
            return backend["token"]
        return backend["calendars"]

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    monkeypatch.setattr(
        orchestrator,
        "oauth_client",
        lambda provider: GoogleCalendarClient(
            oauth_config.provider_settings(GOOGLE), http_client=http_client
        ),
    )
    yield backend
    await http_client.aclose()


# ---------------------------------------------------------------------------
# State store helpers
# ---------------------------------------------------------------------------


class TestStateStore:
    def test_generate_state_is_url_safe_string(self):
        state = _generate_state()
        assert len(state) >= 32
        valid_chars = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_="
        assert all(c in valid_chars for c in state)

    def test_state_is_one_time_use(self):
        state = _generate_state()
        _store_state(state, "salon-1", GOOGLE)
        pending = _validate_and_consume_state(state, GOOGLE)
        assert pending is not None
        assert pending.tenant_id == "salon-1"
        assert _validate_and_consume_state(state, GOOGLE) is None

    def test_state_is_bound_to_provider(self):
        state = _generate_state()
        _store_state(state, "salon-1", GOOGLE)
        assert _validate_and_consume_state(state, OUTLOOK) is None
        # Consumed even on a provider mismatch.
        assert state not in _state_store

    def test_expired_state_is_rejected(self):
        state = _generate_state()
        _state_store[state] = _PendingAuthorization(
            tenant_id="salon-1", provider=GOOGLE, expires_at=time.monotonic() - 1
        )
        assert _validate_and_consume_state(state, GOOGLE) is None


# ---------------------------------------------------------------------------
# Authorize endpoint
# ---------------------------------------------------------------------------


class TestAuthorize:
    async def test_redirects_to_consent_page(self, api):
        response = await api.get("/api/oauth/google/authorize", params={"tenant_id": "salon-1"})

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        params = parse_qs(location.query)
        assert location.netloc == "accounts.google.com"
        assert params["client_id"] == ["google-client"]
        assert params["response_type"] == ["code"]
        assert params["access_type"] == ["offline"]
        assert params["state"][0] in _state_store

    async def test_returns_json_when_redirect_false(self, api):
        response = await api.get(
            "/api/oauth/google/authorize",
            params={"tenant_id": "salon-1", "redirect": "false"},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert "accounts.google.com" in data["authorization_url"]
        pending = _state_store[data["state"]]
        assert pending.tenant_id == "salon-1"
        assert pending.provider is GOOGLE

    async def test_unconfigured_provider(self, api):
        response = await api.get("/api/oauth/outlook/authorize", params={"tenant_id": "salon-1"})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "CONFIGURATION"
        assert not _state_store

    async def test_unknown_provider(self, api):
        response = await api.get("/api/oauth/caldav/authorize", params={"tenant_id": "salon-1"})
        assert response.status_code == 422

    async def test_tenant_is_required(self, api):
        response = await api.get("/api/oauth/google/authorize")
        assert response.status_code == 422


# ---------------------------------------------------------------------------
# Callback endpoint
# ---------------------------------------------------------------------------


class TestCallback:
    async def test_registers_default_calendar(self, api, registry, google_oauth):
        state = _generate_state()
        _store_state(state, "salon-2", GOOGLE)

        response = await api.get(
            "/api/oauth/google/callback", params={"code": "auth-code", "state": state}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data == {
            "success": True,
            "tenant_id": "salon-2",
            "provider": "google",
            "connection_id": "google:owner@example.com",
            "calendar_id": "owner@example.com",
            "calendar_name": "Owner",
        }
        (connection,) = registry.list_connections("salon-2")
        assert connection.is_primary
        assert connection.timezone == "Europe/Paris"
        assert connection.credentials.refresh_token == "1//fake_refresh_token_xyz"
        # Tokens are never echoed back.
        assert "ya29" not in response.text

    async def test_existing_primary_is_kept(self, api, registry, google_oauth):
        state = _generate_state()
        _store_state(state, "salon-1", GOOGLE)

        response = await api.get(
            "/api/oauth/google/callback", params={"code": "auth-code", "state": state}
        )

        assert response.status_code == 200
        added = registry.get_connection("salon-1", "google:owner@example.com")
        assert added is not None
        assert not added.is_primary

    async def test_provider_error(self, api):
        state = _generate_state()
        _store_state(state, "salon-1", GOOGLE)

        response = await api.get(
            "/api/oauth/google/callback", params={"error": "access_denied", "state": state}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "PROVIDER_ERROR"
        assert state not in _state_store

    @pytest.mark.parametrize(
        ("params", "code"),
        [
            ({"state": "s"}, "MISSING_CODE"),
            ({"code": "c"}, "MISSING_STATE"),
            ({"code": "c", "state": "never-issued"}, "INVALID_STATE"),
        ],
    )
    async def test_rejected_callbacks(self, api, params, code):
        response = await api.get("/api/oauth/google/callback", params=params)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == code

    async def test_token_exchange_failure(self, api, registry, google_oauth):
        google_oauth["token"] = httpx.Response(400, json={"error": "invalid_grant"})
        state = _generate_state()
        _store_state(state, "salon-2", GOOGLE)

        response = await api.get(
            "/api/oauth/google/callback", params={"code": "bad", "state": state}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "TOKEN_EXCHANGE_FAILED"
        assert registry.list_connections("salon-2") == []

    async def test_account_without_calendars(self, api, registry, google_oauth):
        google_oauth["calendars"] = httpx.Response(200, json={"items": []})
        state = _generate_state()
        _store_state(state, "salon-2", GOOGLE)

        response = await api.get(
            "/api/oauth/google/callback", params={"code": "auth-code", "state": state}
        )

        assert response.status_code == 503
        assert registry.list_connections("salon-2") == []
