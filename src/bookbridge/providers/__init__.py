"""Calendar provider clients and the registry that maps provider names to them."""

from __future__ import annotations

import httpx

from bookbridge.config import EngineSettings, ProviderOAuthConfig
from bookbridge.core.metrics import EngineMetrics
from bookbridge.models import CalendarProviderName, OAuthCredentials
from bookbridge.providers.base import AuthState, CalendarProviderClient, TokenRefreshCallback
from bookbridge.providers.google import GoogleCalendarClient
from bookbridge.providers.outlook import OutlookCalendarClient

PROVIDER_CLIENTS: dict[CalendarProviderName, type[CalendarProviderClient]] = {
    CalendarProviderName.google: GoogleCalendarClient,
    CalendarProviderName.outlook: OutlookCalendarClient,
}


def get_provider_class(provider: CalendarProviderName | str) -> type[CalendarProviderClient]:
    """Look up the client class for *provider*; raises ``ValueError`` if unknown."""
    try:
        return PROVIDER_CLIENTS[CalendarProviderName(provider)]
    except (KeyError, ValueError) as exc:
        known = ", ".join(sorted(p.value for p in PROVIDER_CLIENTS))
        raise ValueError(f"Unknown calendar provider: {provider!r}. Available: {known}") from exc


def build_client(
    provider: CalendarProviderName | str,
    oauth: ProviderOAuthConfig,
    settings: EngineSettings,
    *,
    credentials: OAuthCredentials | None = None,
    http_client: httpx.AsyncClient | None = None,
    on_token_refreshed: TokenRefreshCallback | None = None,
    metrics: EngineMetrics | None = None,
) -> CalendarProviderClient:
    client_cls = get_provider_class(provider)
    return client_cls(
        oauth,
        credentials=credentials,
        http_client=http_client,
        request_timeout_s=settings.request_timeout_s,
        slot_minutes=settings.slot_minutes,
        lookahead_days=settings.lookahead_days,
        max_alternatives=settings.max_alternatives,
        on_token_refreshed=on_token_refreshed,
        metrics=metrics,
    )


__all__ = [
    "PROVIDER_CLIENTS",
    "AuthState",
    "CalendarProviderClient",
    "GoogleCalendarClient",
    "OutlookCalendarClient",
    "build_client",
    "get_provider_class",
]
