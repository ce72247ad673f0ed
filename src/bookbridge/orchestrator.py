"""Multi-provider calendar orchestration.

The orchestrator owns no calendar data.  It picks the connection a booking
goes to, fans reads out to every active connection of a tenant concurrently,
merges the answers, and turns provider failures into structured results.

Fan-out branches are isolated: each acquires the shared semaphore, runs
under its own timeout and converts any exception into an empty contribution
plus a warning, so one slow or broken calendar never fails the aggregate.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import TypeVar

import httpx

from bookbridge.config import EngineSettings, ProviderOAuthConfig
from bookbridge.core.logging import set_tenant_context
from bookbridge.core.metrics import EngineMetrics
from bookbridge.core.telemetry import engine_span
from bookbridge.errors import (
    ConfigurationError,
    ConflictError,
    PartialAvailabilityError,
    ProviderUnavailableError,
    build_structured_error,
)
from bookbridge.models import (
    BookingRequest,
    CalendarConnection,
    CalendarProviderName,
    CancelResult,
    ConnectionHealth,
    ProviderHealth,
    SalonCalendarConfig,
    TenantHealthReport,
    UnifiedAvailabilitySlot,
    UnifiedBookingResult,
    UnifiedCalendarEvent,
    as_aware,
    ensure_valid_timezone,
    to_unified_event,
)
from bookbridge.providers import CalendarProviderClient, build_client
from bookbridge.providers.base import AuthState
from bookbridge.registry import ConnectionRegistry
from bookbridge.slots import merge_availability_slots, select_alternatives, window_is_free

logger = logging.getLogger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[CalendarConnection], CalendarProviderClient]


@dataclass
class _CachedClient:
    client: CalendarProviderClient
    refresh_token: str | None
    # The access token the client was built with plus every token it rotated to.
    access_tokens: set[str] = field(default_factory=set)

    def serves(self, connection: CalendarConnection) -> bool:
        credentials = connection.credentials
        return (
            credentials.refresh_token == self.refresh_token
            and credentials.access_token in self.access_tokens
        )


@dataclass
class _BookingLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Holders plus waiters.
    users: int = 0


def _booking_dates(start: datetime, end: datetime) -> list[date]:
    """UTC calendar dates touched by ``[start, end)``."""
    first = start.astimezone(UTC).date()
    last = (end.astimezone(UTC) - timedelta(microseconds=1)).date()
    days = [first]
    while days[-1] < last:
        days.append(days[-1] + timedelta(days=1))
    return days


class CalendarOrchestrator:
    """Unified availability, booking and health across a tenant's calendars."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        providers: dict[CalendarProviderName, ProviderOAuthConfig] | None = None,
        client_factory: ClientFactory | None = None,
        registry: ConnectionRegistry | None = None,
        http_client: httpx.AsyncClient | None = None,
        metrics: EngineMetrics | None = None,
    ) -> None:
        self._settings = settings or EngineSettings()
        self._providers = providers or {}
        self._registry = registry
        self._metrics = metrics or EngineMetrics()
        self._http_client = http_client
        self._owns_http_client = False
        self._client_factory = client_factory or self._default_client_factory
        self._clients: dict[str, _CachedClient] = {}
        self._semaphore = asyncio.Semaphore(self._settings.max_concurrency)
        self._booking_locks: dict[tuple[str, date], _BookingLock] = {}

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def registry(self) -> ConnectionRegistry | None:
        return self._registry

    # ------------------------------------------------------------------
    # Client management
    # ------------------------------------------------------------------

    def _shared_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._settings.request_timeout_s)
            self._owns_http_client = True
        return self._http_client

    def oauth_settings(self, provider: CalendarProviderName) -> ProviderOAuthConfig:
        return self._providers.get(provider, ProviderOAuthConfig())

    def _default_client_factory(self, connection: CalendarConnection) -> CalendarProviderClient:
        return build_client(
            connection.provider,
            self.oauth_settings(connection.provider),
            self._settings,
            credentials=connection.credentials,
            http_client=self._shared_http_client(),
            metrics=self._metrics,
        )

    def oauth_client(self, provider: CalendarProviderName) -> CalendarProviderClient:
        """Fresh unauthenticated client for the OAuth consent/callback flow."""
        return build_client(
            provider,
            self.oauth_settings(provider),
            self._settings,
            http_client=self._shared_http_client(),
            metrics=self._metrics,
        )

    def _client_for(self, connection: CalendarConnection) -> CalendarProviderClient:
        """Client bound to this connection's credential pair.

        Credentials are never swapped on a live client: a changed pair or a
        client stuck in ``auth_failed`` gets a new instance.
        """
        cached = self._clients.get(connection.id)
        if cached is not None:
            if cached.client.state is not AuthState.auth_failed and cached.serves(connection):
                return cached.client
            logger.debug("Replacing cached client for connection %s", connection.id)

        client = self._client_factory(connection)
        entry = _CachedClient(
            client=client,
            refresh_token=connection.credentials.refresh_token,
            access_tokens={connection.credentials.access_token},
        )
        client.on_token_refreshed = self._token_persister(connection.id, entry)
        self._clients[connection.id] = entry
        return client

    def _token_persister(self, connection_id: str, entry: _CachedClient) -> Callable[[str], None]:
        def _persist(access_token: str) -> None:
            entry.access_tokens.add(access_token)
            if self._registry is None:
                return
            try:
                self._registry.persist_refreshed_token(connection_id, access_token)
            except Exception:
                # The refreshed token stays usable in memory; only persistence failed.
                logger.exception("Failed to persist refreshed token for %s", connection_id)

        return _persist

    def _evict_if_auth_failed(self, connection: CalendarConnection) -> None:
        cached = self._clients.get(connection.id)
        if cached is not None and cached.client.state is AuthState.auth_failed:
            logger.warning(
                "Evicting client for connection %s after authentication failure", connection.id
            )
            del self._clients[connection.id]

    async def aclose(self) -> None:
        clients = [entry.client for entry in self._clients.values()]
        self._clients.clear()
        for client in clients:
            await client.aclose()
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
            self._owns_http_client = False

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def _fan_out(
        self,
        operation: str,
        connections: Sequence[CalendarConnection],
        call: Callable[[CalendarConnection, CalendarProviderClient], Awaitable[T]],
    ) -> list[T | None]:
        async def _branch(connection: CalendarConnection) -> T | None:
            async with self._semaphore:
                try:
                    async with asyncio.timeout(self._settings.branch_timeout_s):
                        return await call(connection, self._client_for(connection))
                except Exception as exc:
                    failure = PartialAvailabilityError(
                        connection_id=connection.id, operation=operation, cause=exc
                    )
                    logger.warning(
                        "%s",
                        failure.message,
                        extra={
                            "connection_id": connection.id,
                            "provider": connection.provider.value,
                            "error_kind": build_structured_error(exc).kind,
                        },
                    )
                    self._metrics.fanout_failure(
                        operation=operation, provider=connection.provider.value
                    )
                    self._evict_if_auth_failed(connection)
                    return None

        return list(await asyncio.gather(*(_branch(connection) for connection in connections)))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def select_optimal_connection(
        self,
        connections: Iterable[CalendarConnection],
        staff_member: str | None = None,
        preferred_provider: CalendarProviderName | None = None,
    ) -> CalendarConnection | None:
        """Pick the connection a booking should be written to.

        Active connections only; then staff match, preferred provider and the
        primary flag each narrow the candidates, but only when at least one
        candidate survives.  Ties keep input order.
        """
        candidates = [connection for connection in connections if connection.active]
        if not candidates:
            return None

        narrowing: list[Callable[[CalendarConnection], bool]] = []
        if staff_member:
            narrowing.append(lambda conn: conn.staff_member == staff_member)
        if preferred_provider is not None:
            narrowing.append(lambda conn: conn.provider == preferred_provider)
        narrowing.append(lambda conn: conn.is_primary)

        for predicate in narrowing:
            narrowed = [connection for connection in candidates if predicate(connection)]
            if narrowed:
                candidates = narrowed
        return candidates[0]

    async def check_unified_availability(
        self,
        connections: Sequence[CalendarConnection],
        time_min: datetime,
        time_max: datetime,
        timezone: str | None = None,
    ) -> list[UnifiedAvailabilitySlot]:
        """Merged slots across *connections*; a slot is free only if free everywhere.

        Raises ``ValueError`` for a timezone name that is not a known IANA zone.
        """
        timezone = ensure_valid_timezone(timezone or self._settings.default_timezone)
        active = [connection for connection in connections if connection.active]
        start = as_aware(time_min, timezone)
        end = as_aware(time_max, timezone)

        with engine_span("check_unified_availability"):
            results = await self._fan_out(
                "check_availability",
                active,
                lambda connection, client: client.check_availability(
                    [connection.calendar_id],
                    start,
                    end,
                    timezone,
                    staff_member=connection.staff_member,
                ),
            )

        slots = [slot for result in results if result for slot in result]
        return merge_availability_slots(slots)

    async def _unified_alternatives(
        self,
        salon_config: SalonCalendarConfig,
        request: BookingRequest,
    ) -> list[UnifiedAvailabilitySlot]:
        start, _ = request.requested_window()
        lookahead = await self.check_unified_availability(
            salon_config.active_connections,
            start,
            start + timedelta(days=self._settings.lookahead_days),
            request.timezone,
        )
        preferences = salon_config.booking_preferences
        return select_alternatives(
            lookahead,
            duration=timedelta(minutes=request.service.duration_minutes),
            limit=self._settings.max_alternatives,
            business_hours=preferences.business_hours,
            timezone=preferences.timezone,
        )

    @contextlib.asynccontextmanager
    async def _booking_lock(
        self,
        connection: CalendarConnection,
        start: datetime,
        end: datetime,
    ) -> AsyncIterator[None]:
        # Sorted acquisition keeps overlapping multi-day bookings deadlock free.
        keys = sorted((connection.id, day) for day in _booking_dates(start, end))
        entries: list[tuple[tuple[str, date], _BookingLock]] = []
        for key in keys:
            entry = self._booking_locks.get(key)
            if entry is None:
                entry = self._booking_locks[key] = _BookingLock()
            entry.users += 1
            entries.append((key, entry))
        try:
            async with contextlib.AsyncExitStack() as stack:
                for _, entry in entries:
                    await stack.enter_async_context(entry.lock)
                yield
        finally:
            # Drop a day's lock once no holder or waiter references it.
            for key, entry in entries:
                entry.users -= 1
                if entry.users == 0 and self._booking_locks.get(key) is entry:
                    del self._booking_locks[key]

    def _booking_failure(
        self,
        exc: BaseException,
        *,
        tenant_id: str,
        connection: CalendarConnection | None = None,
        alternatives: list[UnifiedAvailabilitySlot] | None = None,
    ) -> UnifiedBookingResult:
        error = build_structured_error(
            exc,
            operation="create_booking",
            tenant_id=tenant_id,
            connection_id=connection.id if connection else None,
        )
        self._metrics.booking(error.kind)
        return UnifiedBookingResult(success=False, error=error, alternatives=alternatives)

    async def create_booking(
        self,
        salon_config: SalonCalendarConfig,
        request: BookingRequest,
        preferred_provider: CalendarProviderName | None = None,
    ) -> UnifiedBookingResult:
        """Book *request* on the best connection, or explain why not.

        The requested window is checked across every active connection first;
        a taken window returns up to ``max_alternatives`` bookable starts from
        the look-ahead window and writes nothing.
        """
        tenant_id = salon_config.salon_id
        set_tenant_context(tenant_id)
        with engine_span("create_booking", tenant_id=tenant_id):
            connection = self.select_optimal_connection(
                salon_config.connections,
                staff_member=request.service.staff_member,
                preferred_provider=preferred_provider,
            )
            if connection is None:
                return self._booking_failure(
                    ConfigurationError(
                        "No active calendar connection is configured", tenant_id=tenant_id
                    ),
                    tenant_id=tenant_id,
                )

            start, end = request.requested_window()
            slots = await self.check_unified_availability(
                salon_config.active_connections, start, end, request.timezone
            )
            free = window_is_free(slots, start, end)
            if free is None:
                return self._booking_failure(
                    ProviderUnavailableError(
                        "No calendar returned availability for the requested window"
                    ),
                    tenant_id=tenant_id,
                    connection=connection,
                )
            if not free:
                alternatives = await self._unified_alternatives(salon_config, request)
                logger.info(
                    "Requested slot %s is unavailable; offering %d alternatives",
                    start.isoformat(),
                    len(alternatives),
                )
                return self._booking_failure(
                    ConflictError(
                        "Requested time slot is not available", alternatives=alternatives
                    ),
                    tenant_id=tenant_id,
                    connection=connection,
                    alternatives=alternatives,
                )

            try:
                async with self._booking_lock(connection, start, end):
                    client = self._client_for(connection)
                    async with asyncio.timeout(self._settings.branch_timeout_s):
                        result = await client.create_booking(
                            connection.calendar_id,
                            request,
                            staff_member=connection.staff_member,
                        )
            except Exception as exc:
                self._evict_if_auth_failed(connection)
                logger.warning(
                    "Booking on connection %s failed: %s",
                    connection.id,
                    exc,
                    extra={"connection_id": connection.id},
                )
                return self._booking_failure(exc, tenant_id=tenant_id, connection=connection)

            if not result.success or result.event is None:
                # Lost a race to a write made after the unified check.
                alternatives = await self._unified_alternatives(salon_config, request)
                return self._booking_failure(
                    ConflictError(
                        "Requested time slot was taken before the booking was written",
                        alternatives=alternatives,
                        connection_id=connection.id,
                    ),
                    tenant_id=tenant_id,
                    connection=connection,
                    alternatives=alternatives,
                )

            self._metrics.booking("success")
            logger.info("Booked event %s on connection %s", result.event.id, connection.id)
            return UnifiedBookingResult(
                success=True, event=to_unified_event(result.event, connection)
            )

    async def cancel_booking(self, connection: CalendarConnection, event_id: str) -> CancelResult:
        with engine_span("cancel_booking"):
            try:
                async with asyncio.timeout(self._settings.branch_timeout_s):
                    return await self._client_for(connection).cancel_booking(
                        connection.calendar_id, event_id
                    )
            except Exception as exc:
                self._evict_if_auth_failed(connection)
                return CancelResult(
                    success=False,
                    error=build_structured_error(
                        exc, operation="cancel_booking", connection_id=connection.id
                    ),
                )

    async def list_unified_events(
        self,
        salon_config: SalonCalendarConfig,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> list[UnifiedCalendarEvent]:
        """Events of every active connection, tagged with their source, sorted by start."""
        set_tenant_context(salon_config.salon_id)

        async def _list(
            connection: CalendarConnection, client: CalendarProviderClient
        ) -> list[UnifiedCalendarEvent]:
            events = await client.list_events(
                connection.calendar_id, time_min=time_min, time_max=time_max
            )
            return [to_unified_event(event, connection) for event in events]

        with engine_span("list_unified_events", tenant_id=salon_config.salon_id):
            results = await self._fan_out("list_events", salon_config.active_connections, _list)

        events = [event for result in results if result for event in result]
        events.sort(key=lambda event: (event.start_at, event.connection_id, event.id))
        return events

    async def health_check(self, salon_config: SalonCalendarConfig) -> TenantHealthReport:
        set_tenant_context(salon_config.salon_id)
        active = salon_config.active_connections
        if not active:
            return TenantHealthReport(overall_status="error", connections=[])

        async def _probe(
            connection: CalendarConnection, client: CalendarProviderClient
        ) -> ProviderHealth:
            return await client.health_check()

        with engine_span("health_check", tenant_id=salon_config.salon_id):
            results = await self._fan_out("health_check", active, _probe)

        reports: list[ConnectionHealth] = []
        for connection, health in zip(active, results, strict=True):
            health = health or ProviderHealth(
                status="error", details="Health check did not complete"
            )
            reports.append(
                ConnectionHealth(
                    connection_id=connection.id,
                    provider=connection.provider,
                    calendar_id=connection.calendar_id,
                    status=health.status,
                    details=health.details,
                )
            )

        healthy = sum(1 for report in reports if report.status == "healthy")
        if healthy == len(reports):
            overall = "healthy"
        elif healthy:
            overall = "degraded"
        else:
            overall = "error"
        return TenantHealthReport(overall_status=overall, connections=reports)


__all__ = ["CalendarOrchestrator", "ClientFactory"]
