"""Calendar connection OAuth endpoints.

Implements the two-leg authorization-code flow a tenant uses to connect a
Google or Outlook calendar:

  1. GET /api/oauth/{provider}/authorize?tenant_id=...
     - Generates a cryptographically random state token (CSRF protection).
     - Stores the state with the tenant and provider it was issued for (TTL 10 min).
     - Redirects to the provider consent page, or returns the URL as JSON when
       ``?redirect=false``.

  2. GET /api/oauth/{provider}/callback?code=...&state=...
     - Validates and consumes the state token.
     - Exchanges the authorization code for tokens.
     - Lists the account's calendars and registers the default one as a
       connection of the tenant.

Security notes:
  - State tokens are one-time-use and bound to the provider they were issued for.
  - Token values are never echoed back in responses or logged.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from bookbridge.api.deps import get_orchestrator, get_registry
from bookbridge.api.models import ApiResponse, ErrorDetail, ErrorResponse
from bookbridge.api.models.oauth import OAuthCallbackSuccess, OAuthStartResponse
from bookbridge.errors import AuthError, ConfigurationError, ProviderUnavailableError
from bookbridge.models import (
    CalendarConnection,
    CalendarProviderName,
    OAuthCredentials,
    ProviderCalendar,
)
from bookbridge.orchestrator import CalendarOrchestrator
from bookbridge.registry import ConnectionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/oauth", tags=["oauth"])

# ---------------------------------------------------------------------------
# In-memory CSRF state store
# State entries expire after 10 minutes.
# ---------------------------------------------------------------------------

_STATE_TTL_SECONDS = 600  # 10 minutes


@dataclass(frozen=True)
class _PendingAuthorization:
    tenant_id: str
    provider: CalendarProviderName
    expires_at: float


# Maps state token → pending authorization (monotonic expiry).
# NOTE: This store is process-local. Do not run multiple worker processes;
# CSRF state validation will fail across workers.
_state_store: dict[str, _PendingAuthorization] = {}


def _generate_state() -> str:
    """Generate a cryptographically random CSRF state token."""
    return secrets.token_urlsafe(32)


def _store_state(state: str, tenant_id: str, provider: CalendarProviderName) -> None:
    """Store a state token with the tenant it was issued for and an expiry timestamp."""
    _state_store[state] = _PendingAuthorization(
        tenant_id=tenant_id,
        provider=provider,
        expires_at=time.monotonic() + _STATE_TTL_SECONDS,
    )
    _evict_expired_states()


def _validate_and_consume_state(
    state: str, provider: CalendarProviderName
) -> _PendingAuthorization | None:
    """Validate a state token and consume it (one-time-use).

    Returns the pending authorization if the state was valid, unexpired and
    issued for *provider*; ``None`` otherwise.
    """
    _evict_expired_states()
    pending = _state_store.pop(state, None)
    if pending is None or time.monotonic() >= pending.expires_at:
        return None
    if pending.provider != provider:
        return None
    return pending


def _evict_expired_states() -> None:
    """Remove all expired state tokens from the store."""
    now = time.monotonic()
    expired = [k for k, pending in _state_store.items() if now >= pending.expires_at]
    for k in expired:
        del _state_store[k]


def _clear_state_store() -> None:
    """Clear all state entries. Used in tests."""
    _state_store.clear()


def _callback_error(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _default_calendar(calendars: list[ProviderCalendar]) -> ProviderCalendar | None:
    for calendar in calendars:
        if calendar.is_default:
            return calendar
    return calendars[0] if calendars else None


# ---------------------------------------------------------------------------
# Authorize endpoint
# ---------------------------------------------------------------------------


@router.get("/{provider}/authorize")
async def oauth_authorize(
    provider: CalendarProviderName,
    tenant_id: str = Query(..., min_length=1, description="Tenant the calendar is for."),
    redirect: bool = Query(
        default=True,
        description="If true (default), redirect to the consent page. "
        "If false, return the URL as JSON for programmatic callers.",
    ),
    orchestrator: CalendarOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Begin the OAuth authorization flow for *provider*."""
    if not orchestrator.oauth_settings(provider).is_configured:
        raise ConfigurationError(
            f"{provider.value} OAuth app settings are not configured", provider=provider.value
        )

    state = _generate_state()
    _store_state(state, tenant_id, provider)

    client = orchestrator.oauth_client(provider)
    try:
        authorization_url = client.authorization_url(state)
    finally:
        await client.aclose()

    logger.info(
        "%s OAuth flow started for tenant %s (state=%s...)", provider.value, tenant_id, state[:8]
    )

    if redirect:
        return RedirectResponse(url=authorization_url, status_code=302)

    return JSONResponse(
        content=ApiResponse[OAuthStartResponse](
            data=OAuthStartResponse(authorization_url=authorization_url, state=state)
        ).model_dump()
    )


# ---------------------------------------------------------------------------
# Callback endpoint
# ---------------------------------------------------------------------------


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: CalendarProviderName,
    code: str | None = Query(default=None, description="Authorization code."),
    state: str | None = Query(default=None, description="CSRF state token."),
    error: str | None = Query(default=None, description="OAuth error code from the provider."),
    orchestrator: CalendarOrchestrator = Depends(get_orchestrator),
    registry: ConnectionRegistry = Depends(get_registry),
) -> Response:
    """Exchange the code and register the account's default calendar."""
    if error:
        logger.warning("%s OAuth provider error: %s", provider.value, error)
        if state:
            _validate_and_consume_state(state, provider)
        return _callback_error(
            400, "PROVIDER_ERROR", "The provider did not grant calendar access."
        )

    if not code:
        return _callback_error(400, "MISSING_CODE", "Authorization code is missing.")
    if not state:
        return _callback_error(
            400, "MISSING_STATE", "State parameter is missing. Possible CSRF attempt."
        )

    pending = _validate_and_consume_state(state, provider)
    if pending is None:
        logger.warning("OAuth callback received invalid or expired state token")
        return _callback_error(
            400,
            "INVALID_STATE",
            "State parameter is invalid or expired. Please restart the OAuth flow.",
        )

    client = orchestrator.oauth_client(provider)
    try:
        try:
            grant = await client.exchange_code(code)
        except AuthError as exc:
            logger.warning("%s OAuth token exchange failed: %s", provider.value, exc)
            return _callback_error(
                400,
                "TOKEN_EXCHANGE_FAILED",
                "Failed to exchange the authorization code. Please restart the OAuth flow.",
            )
        calendars = await client.list_calendars()
    finally:
        await client.aclose()

    calendar = _default_calendar(calendars)
    if calendar is None:
        raise ProviderUnavailableError(
            f"{provider.value} account has no calendars", provider=provider.value
        )

    existing = registry.list_connections(pending.tenant_id)
    connection = registry.add_connection(
        pending.tenant_id,
        CalendarConnection(
            provider=provider,
            calendar_id=calendar.id,
            name=calendar.name,
            credentials=OAuthCredentials(
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
            ),
            is_primary=not any(conn.active and conn.is_primary for conn in existing),
            timezone=calendar.time_zone or orchestrator.settings.default_timezone,
        ),
    )
    logger.info(
        "%s calendar %s connected for tenant %s",
        provider.value,
        connection.id,
        pending.tenant_id,
    )

    return JSONResponse(
        content=ApiResponse[OAuthCallbackSuccess](
            data=OAuthCallbackSuccess(
                tenant_id=pending.tenant_id,
                provider=provider,
                connection_id=connection.id,
                calendar_id=calendar.id,
                calendar_name=calendar.name,
            )
        ).model_dump(mode="json")
    )
