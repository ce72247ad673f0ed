"""Connection registry: where tenants' calendar connections and tokens live.

The engine reads a tenant's connections from storage and writes rotated
access tokens and newly authorized calendars back.
``InMemoryConnectionRegistry`` is the process-local implementation used by
the API and the tests; a database-backed registry implements the same
methods.
"""

from __future__ import annotations

import abc
import logging
import threading

from bookbridge.models import (
    BookingPreferences,
    CalendarConnection,
    OAuthCredentials,
    SalonCalendarConfig,
)

logger = logging.getLogger(__name__)


class ConnectionRegistry(abc.ABC):
    """Read tenant connections and persist refreshed tokens."""

    @abc.abstractmethod
    def list_connections(self, tenant_id: str) -> list[CalendarConnection]:
        """Return every connection of *tenant_id*, active or not."""

    @abc.abstractmethod
    def add_connection(self, tenant_id: str, connection: CalendarConnection) -> CalendarConnection:
        """Register (or replace) *connection* for *tenant_id*."""

    @abc.abstractmethod
    def persist_refreshed_token(self, connection_id: str, access_token: str) -> None:
        """Store a rotated access token for *connection_id*."""

    def salon_config(self, tenant_id: str) -> SalonCalendarConfig:
        return SalonCalendarConfig(salon_id=tenant_id, connections=self.list_connections(tenant_id))


class InMemoryConnectionRegistry(ConnectionRegistry):
    """Thread-safe dict-backed registry."""

    def __init__(self, connections: dict[str, list[CalendarConnection]] | None = None) -> None:
        self._lock = threading.Lock()
        self._connections: dict[str, dict[str, CalendarConnection]] = {}
        self._tenant_of: dict[str, str] = {}
        self._preferences: dict[str, BookingPreferences] = {}
        for tenant_id, tenant_connections in (connections or {}).items():
            for connection in tenant_connections:
                self.add_connection(tenant_id, connection)

    def add_connection(self, tenant_id: str, connection: CalendarConnection) -> CalendarConnection:
        """Register (or replace) *connection* for *tenant_id*."""
        with self._lock:
            previous_tenant = self._tenant_of.get(connection.id)
            if previous_tenant is not None and previous_tenant != tenant_id:
                raise ValueError(
                    f"Connection {connection.id!r} already belongs to tenant {previous_tenant!r}"
                )
            self._connections.setdefault(tenant_id, {})[connection.id] = connection
            self._tenant_of[connection.id] = tenant_id
        logger.info(
            "Registered %s connection %s for tenant %s",
            connection.provider.value,
            connection.id,
            tenant_id,
        )
        return connection

    def get_connection(self, tenant_id: str, connection_id: str) -> CalendarConnection | None:
        with self._lock:
            return self._connections.get(tenant_id, {}).get(connection_id)

    def deactivate_connection(self, tenant_id: str, connection_id: str) -> bool:
        """Mark a connection inactive; returns ``False`` if it does not exist."""
        with self._lock:
            connection = self._connections.get(tenant_id, {}).get(connection_id)
            if connection is None:
                return False
            self._connections[tenant_id][connection_id] = connection.model_copy(
                update={"active": False}
            )
        return True

    def set_booking_preferences(self, tenant_id: str, preferences: BookingPreferences) -> None:
        with self._lock:
            self._preferences[tenant_id] = preferences

    def list_connections(self, tenant_id: str) -> list[CalendarConnection]:
        with self._lock:
            return list(self._connections.get(tenant_id, {}).values())

    def persist_refreshed_token(self, connection_id: str, access_token: str) -> None:
        with self._lock:
            tenant_id = self._tenant_of.get(connection_id)
            if tenant_id is None:
                logger.warning("Dropping refreshed token for unknown connection %s", connection_id)
                return
            connection = self._connections[tenant_id][connection_id]
            self._connections[tenant_id][connection_id] = connection.model_copy(
                update={
                    "credentials": OAuthCredentials(
                        access_token=access_token,
                        refresh_token=connection.credentials.refresh_token,
                    )
                }
            )
        logger.debug("Persisted refreshed access token for connection %s", connection_id)

    def salon_config(self, tenant_id: str) -> SalonCalendarConfig:
        with self._lock:
            preferences = self._preferences.get(tenant_id)
        config = super().salon_config(tenant_id)
        if preferences is not None:
            config.booking_preferences = preferences
        return config
