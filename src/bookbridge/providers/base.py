"""Provider client interface: token lifecycle, availability and booking protocol.

Each subclass speaks one provider's REST API and converts its native payloads
into the unified models.  Everything that does not depend on the wire format
lives here: bearer-token requests with a single refresh-and-retry on 401,
rate-limit backoff, availability tiling and the check-then-create booking flow.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, ClassVar
from urllib.parse import urlencode

import httpx

from bookbridge.config import ProviderOAuthConfig
from bookbridge.core.metrics import EngineMetrics
from bookbridge.errors import (
    AuthError,
    ProviderAPIError,
    ProviderUnavailableError,
    build_structured_error,
    safe_error_message,
)
from bookbridge.models import (
    DEFAULT_TIMEZONE,
    Attendee,
    AttendeeResponseStatus,
    AvailabilitySlot,
    BookingRequest,
    BookingResult,
    CalendarEvent,
    CalendarEventCreate,
    CalendarEventUpdate,
    CalendarProviderName,
    CancelResult,
    OAuthCredentials,
    OperationError,
    ProviderCalendar,
    ProviderHealth,
    TokenGrant,
    as_aware,
    coerce_zoneinfo,
    ensure_valid_timezone,
)
from bookbridge.slots import (
    DEFAULT_SLOT_MINUTES,
    generate_time_slots,
    mark_availability,
    select_alternatives,
    window_is_free,
)

logger = logging.getLogger(__name__)

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

DEFAULT_REQUEST_TIMEOUT_S = 10.0
DEFAULT_LOOKAHEAD_DAYS = 7
DEFAULT_MAX_ALTERNATIVES = 5

TokenRefreshCallback = Callable[[str], None]


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or 3600
    return 3600


class AuthState(StrEnum):
    """Credential state of one client instance."""

    unauthenticated = "unauthenticated"
    authenticated = "authenticated"
    token_expired = "token_expired"
    auth_failed = "auth_failed"


class CalendarProviderClient(abc.ABC):
    """Authenticated client for one provider, bound to one credential pair."""

    provider: ClassVar[CalendarProviderName]
    api_base_url: ClassVar[str]
    scopes: ClassVar[tuple[str, ...]]

    def __init__(
        self,
        oauth: ProviderOAuthConfig,
        *,
        credentials: OAuthCredentials | None = None,
        http_client: httpx.AsyncClient | None = None,
        request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        slot_minutes: int = DEFAULT_SLOT_MINUTES,
        lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS,
        max_alternatives: int = DEFAULT_MAX_ALTERNATIVES,
        on_token_refreshed: TokenRefreshCallback | None = None,
        metrics: EngineMetrics | None = None,
    ) -> None:
        self._oauth = oauth
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=request_timeout_s)
        self._slot_minutes = slot_minutes
        self._lookahead_days = lookahead_days
        self._max_alternatives = max_alternatives
        self._on_token_refreshed = on_token_refreshed
        self._metrics = metrics or EngineMetrics()

        self._access_token: str | None = None
        self._refresh_token: str | None = None
        self._state = AuthState.unauthenticated
        self._refresh_lock = asyncio.Lock()

        if not oauth.is_configured:
            logger.warning(
                "%s OAuth app settings are incomplete; token refresh and code exchange will fail",
                self.provider.value,
            )

        if credentials is not None:
            self.set_credentials(credentials.access_token, credentials.refresh_token)

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def access_token(self) -> str | None:
        return self._access_token

    @property
    def on_token_refreshed(self) -> TokenRefreshCallback | None:
        return self._on_token_refreshed

    @on_token_refreshed.setter
    def on_token_refreshed(self, callback: TokenRefreshCallback | None) -> None:
        self._on_token_refreshed = callback

    @property
    @abc.abstractmethod
    def token_url(self) -> str: ...

    @property
    @abc.abstractmethod
    def authorize_url(self) -> str: ...

    def set_credentials(self, access_token: str | None, refresh_token: str | None = None) -> None:
        """Install a new token pair; a missing refresh token keeps the current one."""
        if access_token:
            self._access_token = access_token
        if refresh_token:
            self._refresh_token = refresh_token
        self._state = AuthState.authenticated if self._access_token else AuthState.unauthenticated

    def authorization_url(self, state: str | None = None) -> str:
        """Consent URL the end user is redirected to when connecting a calendar."""
        params = {
            "client_id": self._oauth.client_id,
            "redirect_uri": self._oauth.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            **self._extra_authorization_params(),
        }
        if state:
            params["state"] = state
        return f"{self.authorize_url}?{urlencode(params)}"

    def _extra_authorization_params(self) -> dict[str, str]:
        return {}

    def _extra_token_params(self) -> dict[str, str]:
        return {}

    async def exchange_code(self, code: str) -> TokenGrant:
        """Trade an authorization code for tokens and install them on this client."""
        grant = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._oauth.redirect_uri,
            }
        )
        self.set_credentials(grant.access_token, grant.refresh_token)
        return grant

    async def refresh_access_token(self) -> TokenGrant:
        """Exchange the refresh token for a new access token.

        Raises ``AuthError`` (and moves to ``auth_failed``) when no refresh
        token is set or the token endpoint rejects it.
        """
        if not self._refresh_token:
            self._state = AuthState.auth_failed
            raise AuthError(
                f"{self.provider.value} access token expired and no refresh token is available",
                provider=self.provider.value,
            )
        try:
            grant = await self._token_request(
                {"grant_type": "refresh_token", "refresh_token": self._refresh_token}
            )
        except AuthError:
            self._state = AuthState.auth_failed
            self._metrics.token_refresh(provider=self.provider.value, outcome="failure")
            raise

        self._access_token = grant.access_token
        if grant.refresh_token:
            self._refresh_token = grant.refresh_token
        self._state = AuthState.authenticated
        self._metrics.token_refresh(provider=self.provider.value, outcome="success")
        logger.info("Refreshed %s access token", self.provider.value)

        if self._on_token_refreshed is not None:
            self._on_token_refreshed(grant.access_token)
        return grant

    async def _token_request(self, data: dict[str, str]) -> TokenGrant:
        form = {
            "client_id": self._oauth.client_id,
            "client_secret": self._oauth.client_secret,
            **self._extra_token_params(),
            **data,
        }
        try:
            response = await self._http_client.post(
                self.token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise AuthError(
                f"{self.provider.value} OAuth token request failed: {exc}",
                provider=self.provider.value,
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise AuthError(
                f"{self.provider.value} OAuth token request failed "
                f"({response.status_code}): {safe_error_message(response)}",
                provider=self.provider.value,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError(
                f"{self.provider.value} OAuth token endpoint returned invalid JSON",
                provider=self.provider.value,
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthError(
                f"{self.provider.value} OAuth token response is missing a non-empty access_token",
                provider=self.provider.value,
            )

        refresh_token = payload.get("refresh_token")
        return TokenGrant(
            access_token=access_token.strip(),
            refresh_token=refresh_token if isinstance(refresh_token, str) else None,
            expires_in=_coerce_expires_in_seconds(payload.get("expires_in")),
            token_type=str(payload.get("token_type") or "Bearer"),
        )

    async def _refresh_after_401(self, stale_token: str) -> str:
        async with self._refresh_lock:
            # Another caller already refreshed while we were waiting.
            if self._access_token and self._access_token != stale_token:
                return self._access_token
            if self._state is AuthState.auth_failed:
                raise AuthError(
                    f"{self.provider.value} token refresh failed; re-authentication required",
                    provider=self.provider.value,
                )
            grant = await self.refresh_access_token()
            return grant.access_token

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        if path.startswith("https://") or path.startswith("http://"):
            return path
        normalized_path = path if path.startswith("/") else f"/{path}"
        return f"{self.api_base_url}{normalized_path}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send an authenticated request.

        On 401 the refresh token is exchanged once and the request retried
        once; a second 401 is terminal.  429/503 responses are retried with
        exponential backoff, honouring ``Retry-After``.
        """
        if self._state is AuthState.auth_failed:
            raise AuthError(
                f"{self.provider.value} credentials were rejected; re-authentication required",
                provider=self.provider.value,
            )
        if not self._access_token:
            raise AuthError(
                f"No {self.provider.value} access token is set; connect the calendar first",
                provider=self.provider.value,
            )

        url = self._url(path)
        token = self._access_token
        response = await self._send(method, url, token, params, json_body, extra_headers)

        if response.status_code == 401:
            if self._access_token == token:
                self._state = AuthState.token_expired
            token = await self._refresh_after_401(token)
            response = await self._send(method, url, token, params, json_body, extra_headers)
            if response.status_code == 401:
                self._state = AuthState.auth_failed
                raise AuthError(
                    f"{self.provider.value} rejected the refreshed access token",
                    provider=self.provider.value,
                )

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            retry_after_header = response.headers.get("Retry-After")
            if response.status_code == 429 and retry_after_header is not None:
                try:
                    backoff = float(retry_after_header)
                except ValueError:
                    pass
            logger.warning(
                "%s API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                self.provider.value,
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._send(
                method, url, self._access_token or token, params, json_body, extra_headers
            )
            retry += 1

        return response

    async def _send(
        self,
        method: str,
        url: str,
        token: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        extra_headers: dict[str, str] | None,
    ) -> httpx.Response:
        headers: dict[str, str] = {"Authorization": f"Bearer {token}"}
        if extra_headers:
            headers.update(extra_headers)
        started = time.monotonic()
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(
                f"{self.provider.value} request failed: {exc}",
                provider=self.provider.value,
            ) from exc
        finally:
            self._metrics.record_provider_request(
                provider=self.provider.value,
                method=method,
                latency_ms=(time.monotonic() - started) * 1000,
            )

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderAPIError(
                status_code=response.status_code,
                body=safe_error_message(response),
                provider=self.provider.value,
            )

    def _decode_json(self, response: httpx.Response) -> dict[str, Any]:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderAPIError(
                status_code=response.status_code,
                body="invalid JSON in a successful response",
                provider=self.provider.value,
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderAPIError(
                status_code=response.status_code,
                body="unexpected JSON payload shape",
                provider=self.provider.value,
            )
        return payload

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        response = await self._request(
            method,
            path,
            params=params,
            json_body=json_body,
            extra_headers=extra_headers,
        )
        self._raise_for_status(response)
        return self._decode_json(response)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Provider-specific operations
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def list_events(
        self,
        calendar_id: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        max_results: int | None = None,
        order_by: str = "startTime",
    ) -> list[CalendarEvent]: ...

    @abc.abstractmethod
    async def get_event(self, calendar_id: str, event_id: str) -> CalendarEvent | None: ...

    @abc.abstractmethod
    async def create_event(self, calendar_id: str, event: CalendarEventCreate) -> CalendarEvent: ...

    @abc.abstractmethod
    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        patch: CalendarEventUpdate,
    ) -> CalendarEvent: ...

    @abc.abstractmethod
    async def delete_event(self, calendar_id: str, event_id: str) -> None: ...

    @abc.abstractmethod
    async def list_calendars(self) -> list[ProviderCalendar]: ...

    @abc.abstractmethod
    async def _health_probe(self) -> None:
        """One cheap authenticated read; raises on failure."""

    # ------------------------------------------------------------------
    # Availability and booking
    # ------------------------------------------------------------------

    async def _calendar_availability(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        staff_member: str | None,
    ) -> list[AvailabilitySlot]:
        events = await self.list_events(calendar_id, time_min=time_min, time_max=time_max)
        windows = generate_time_slots(time_min, time_max, self._slot_minutes)
        return mark_availability(
            windows,
            events,
            provider=self.provider,
            calendar_id=calendar_id,
            staff_member=staff_member,
        )

    async def check_availability(
        self,
        calendar_ids: list[str],
        time_min: datetime,
        time_max: datetime,
        timezone: str = DEFAULT_TIMEZONE,
        *,
        staff_member: str | None = None,
    ) -> list[AvailabilitySlot]:
        """Tile ``[time_min, time_max)`` per calendar and mark busy windows.

        Naive bounds are read in *timezone*.  A calendar whose events cannot
        be listed is logged and left out of the result.
        """
        timezone = ensure_valid_timezone(timezone)
        start = as_aware(time_min, timezone)
        end = as_aware(time_max, timezone)
        if end <= start:
            return []

        results = await asyncio.gather(
            *(
                self._calendar_availability(calendar_id, start, end, staff_member)
                for calendar_id in calendar_ids
            ),
            return_exceptions=True,
        )

        slots: list[AvailabilitySlot] = []
        for calendar_id, result in zip(calendar_ids, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(
                    "Availability check failed for %s calendar %s: %s",
                    self.provider.value,
                    calendar_id,
                    result,
                )
                continue
            slots.extend(result)
        return slots

    def build_booking_event(self, request: BookingRequest) -> CalendarEventCreate:
        """Event payload for a booking; the customer is invited only on request."""
        start, end = request.requested_window()
        local_tz = coerce_zoneinfo(request.timezone)
        lines = [
            f"Service: {request.service.name}",
            f"Customer: {request.customer.name}",
            f"Phone: {request.customer.phone or 'Not provided'}",
            f"Duration: {request.service.duration_minutes} minutes",
        ]
        if request.notes:
            lines.extend(["", f"Notes: {request.notes}"])

        attendees: list[Attendee] = []
        if request.send_invites:
            attendees.append(
                Attendee(
                    email=request.customer.email,
                    name=request.customer.name,
                    response_status=AttendeeResponseStatus.needs_action,
                )
            )

        return CalendarEventCreate(
            title=f"{request.service.name} - {request.customer.name}",
            start_at=start.astimezone(local_tz),
            end_at=end.astimezone(local_tz),
            timezone=request.timezone,
            description="\n".join(lines),
            attendees=attendees,
            create_online_meeting=request.create_online_meeting,
        )

    async def find_alternatives(
        self,
        calendar_id: str,
        request: BookingRequest,
        *,
        staff_member: str | None = None,
    ) -> list[AvailabilitySlot]:
        """Available slots in the look-ahead window where the service fits."""
        start, _ = request.requested_window()
        lookahead = await self.check_availability(
            [calendar_id],
            start,
            start + timedelta(days=self._lookahead_days),
            request.timezone,
            staff_member=staff_member,
        )
        return select_alternatives(
            lookahead,
            duration=timedelta(minutes=request.service.duration_minutes),
            limit=self._max_alternatives,
        )

    async def create_booking(
        self,
        calendar_id: str,
        request: BookingRequest,
        *,
        staff_member: str | None = None,
    ) -> BookingResult:
        """Re-verify the requested window on *calendar_id*, then create the event.

        Listing and creation errors propagate to the caller.
        """
        start, end = request.requested_window()
        events = await self.list_events(calendar_id, time_min=start, time_max=end)
        slots = mark_availability(
            generate_time_slots(start, end, self._slot_minutes),
            events,
            provider=self.provider,
            calendar_id=calendar_id,
            staff_member=staff_member,
        )
        if not window_is_free(slots, start, end):
            alternatives = await self.find_alternatives(
                calendar_id, request, staff_member=staff_member
            )
            logger.info(
                "Requested %s slot on %s is taken; offering %d alternatives",
                self.provider.value,
                calendar_id,
                len(alternatives),
            )
            return BookingResult(
                success=False,
                error=OperationError(
                    kind="conflict",
                    message="Requested time slot is not available",
                    error_type="ConflictError",
                    context={"calendar_id": calendar_id},
                ),
                alternatives=alternatives,
            )

        event = await self.create_event(calendar_id, self.build_booking_event(request))
        logger.info("Created %s booking %s on %s", self.provider.value, event.id, calendar_id)
        return BookingResult(success=True, event=event)

    async def cancel_booking(self, calendar_id: str, event_id: str) -> CancelResult:
        await self.delete_event(calendar_id, event_id)
        return CancelResult(success=True)

    async def health_check(self) -> ProviderHealth:
        # Any failure, including programming errors in the probe, reports as unhealthy.
        try:
            await self._health_probe()
        except Exception as exc:
            return ProviderHealth(status="error", details=build_structured_error(exc).message)
        return ProviderHealth(status="healthy")
