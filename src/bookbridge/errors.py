"""Error taxonomy for the calendar engine and helpers to report errors safely.

- ``AuthError``: missing, expired or unrefreshable credentials
- ``ProviderAPIError``: non-2xx response from a provider
- ``ProviderUnavailableError``: provider could not be reached
- ``ConfigurationError``: no usable connection for the request
- ``ConflictError``: requested slot taken; always carries alternatives
- ``PartialAvailabilityError``: one connection failed during a fan-out
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

import httpx

from bookbridge.models import OperationError

if TYPE_CHECKING:
    from bookbridge.models import AvailabilitySlot

MAX_ERROR_MESSAGE_LENGTH = 200


class CalendarEngineError(RuntimeError):
    """Base class for every error raised by the engine."""

    kind = "engine"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {key: str(value) for key, value in context.items() if value is not None}


class AuthError(CalendarEngineError):
    """Raised when a connection cannot be authenticated for this request."""

    kind = "auth"


class ProviderAPIError(CalendarEngineError):
    """Raised when a provider API responds with a non-2xx status."""

    kind = "provider_api"

    def __init__(self, *, status_code: int, body: str, provider: str | None = None) -> None:
        self.status_code = status_code
        self.body = body
        label = provider or "Calendar provider"
        super().__init__(
            f"{label} API request failed ({status_code}): {body}",
            status_code=status_code,
            provider=provider,
        )


class ProviderUnavailableError(CalendarEngineError):
    """Raised when a provider cannot be reached at all (network failure, no data)."""

    kind = "provider_unavailable"


class ConfigurationError(CalendarEngineError):
    """Raised when no active connection can serve the request."""

    kind = "configuration"


class ConflictError(CalendarEngineError):
    """Raised when the requested slot is unavailable."""

    kind = "conflict"

    def __init__(
        self, message: str, *, alternatives: list[AvailabilitySlot], **context: Any
    ) -> None:
        super().__init__(message, **context)
        self.alternatives = alternatives


class PartialAvailabilityError(CalendarEngineError):
    """One connection in a fan-out failed; logged, never raised to callers."""

    kind = "partial_availability"

    def __init__(self, *, connection_id: str, operation: str, cause: BaseException) -> None:
        super().__init__(
            f"{operation} failed for connection {connection_id}: {cause}",
            connection_id=connection_id,
            operation=operation,
        )
        self.cause = cause


def _normalize_message(message: str) -> str:
    return " ".join(message.split())[:MAX_ERROR_MESSAGE_LENGTH]


def redact_credential_values(message: str) -> str:
    """Strip token and secret values out of an error message."""
    redacted = re.sub(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", message)
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|code|token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*:\s*([^\s,;\"']+)",
        r"\1: [REDACTED]",
        redacted,
    )
    return redacted


def safe_error_message(response: httpx.Response) -> str:
    """Summarize a provider error body in at most 200 characters."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return _normalize_message(redact_credential_values(message))
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return _normalize_message(
                    redact_credential_values(f"{error_payload}: {description}")
                )
            return _normalize_message(redact_credential_values(error_payload))

    raw_text = response.text.strip()
    if raw_text:
        return _normalize_message(redact_credential_values(raw_text))
    return "Request failed without an error payload"


def build_structured_error(exc: BaseException, **context: Any) -> OperationError:
    """Convert any exception into an ``OperationError`` with sanitized text."""
    if isinstance(exc, CalendarEngineError):
        kind = exc.kind
        merged = {**exc.context}
    elif isinstance(exc, TimeoutError):
        kind = "timeout"
        merged = {}
    elif isinstance(exc, ValueError):
        kind = "invalid_input"
        merged = {}
    else:
        kind = "internal"
        merged = {}
    merged.update({key: str(value) for key, value in context.items() if value is not None})

    raw_message = str(exc) or type(exc).__name__
    return OperationError(
        kind=kind,
        message=_normalize_message(redact_credential_values(raw_message)),
        error_type=type(exc).__name__,
        context=merged,
    )
