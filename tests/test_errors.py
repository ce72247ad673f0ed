"""Unit tests for the engine error taxonomy and error sanitization helpers."""

from __future__ import annotations

import httpx
import pytest

from bookbridge.errors import (
    AuthError,
    CalendarEngineError,
    ConfigurationError,
    ConflictError,
    PartialAvailabilityError,
    ProviderAPIError,
    ProviderUnavailableError,
    build_structured_error,
    redact_credential_values,
    safe_error_message,
)

pytestmark = pytest.mark.unit


class TestErrorHierarchy:
    @pytest.mark.parametrize(
        ("exc", "kind"),
        [
            (AuthError("expired"), "auth"),
            (ProviderAPIError(status_code=500, body="boom"), "provider_api"),
            (ProviderUnavailableError("unreachable"), "provider_unavailable"),
            (ConfigurationError("no connections"), "configuration"),
            (ConflictError("taken", alternatives=[]), "conflict"),
        ],
    )
    def test_kinds(self, exc, kind):
        assert isinstance(exc, CalendarEngineError)
        assert isinstance(exc, RuntimeError)
        assert exc.kind == kind

    def test_provider_api_error_carries_status_and_body(self):
        err = ProviderAPIError(status_code=403, body="Forbidden", provider="google")
        assert err.status_code == 403
        assert err.body == "Forbidden"
        assert "403" in str(err)
        assert err.context == {"status_code": "403", "provider": "google"}

    def test_context_drops_none_values(self):
        err = AuthError("expired", provider="outlook", connection_id=None)
        assert err.context == {"provider": "outlook"}

    def test_partial_availability_keeps_cause(self):
        cause = TimeoutError()
        err = PartialAvailabilityError(connection_id="google:primary", operation="x", cause=cause)
        assert err.cause is cause
        assert "google:primary" in err.message


class TestRedaction:
    def test_bearer_tokens_are_redacted(self):
        redacted = redact_credential_values("Authorization: Bearer ya29.secret-value")
        assert "ya29" not in redacted
        assert "Bearer [REDACTED]" in redacted

    def test_key_value_pairs_are_redacted(self):
        redacted = redact_credential_values("refresh_token=1//abc&client_secret=shh")
        assert "1//abc" not in redacted
        assert "shh" not in redacted

    def test_json_fields_are_redacted(self):
        redacted = redact_credential_values('{"access_token": "tok-123", "ok": true}')
        assert "tok-123" not in redacted
        assert '"ok": true' in redacted


class TestSafeErrorMessage:
    def _response(self, status: int, **kwargs) -> httpx.Response:
        return httpx.Response(status, request=httpx.Request("GET", "https://x.invalid"), **kwargs)

    def test_google_error_shape(self):
        response = self._response(403, json={"error": {"message": "Rate   limit\nexceeded"}})
        assert safe_error_message(response) == "Rate limit exceeded"

    def test_oauth_error_shape(self):
        response = self._response(
            400, json={"error": "invalid_grant", "error_description": "Token expired"}
        )
        assert safe_error_message(response) == "invalid_grant: Token expired"

    def test_plain_text_is_truncated(self):
        response = self._response(500, text="x" * 500)
        assert len(safe_error_message(response)) == 200

    def test_empty_body(self):
        assert safe_error_message(self._response(502)) == "Request failed without an error payload"


class TestBuildStructuredError:
    def test_engine_error_kind_and_context(self):
        error = build_structured_error(
            AuthError("expired", provider="google"), connection_id="google:primary"
        )
        assert error.kind == "auth"
        assert error.error_type == "AuthError"
        assert error.context == {"provider": "google", "connection_id": "google:primary"}

    def test_timeout(self):
        error = build_structured_error(TimeoutError())
        assert error.kind == "timeout"
        assert error.message == "TimeoutError"

    def test_value_error_is_invalid_input(self):
        assert build_structured_error(ValueError("bad window")).kind == "invalid_input"

    def test_unknown_exception_is_internal(self):
        assert build_structured_error(KeyError("x")).kind == "internal"

    def test_message_is_sanitized(self):
        error = build_structured_error(RuntimeError("failed   with Bearer abc.def\n" + "y" * 300))
        assert "abc.def" not in error.message
        assert len(error.message) <= 200
        assert "\n" not in error.message
