"""Shared fixtures for the bookbridge test suite.

``FakeCalendarClient`` is a provider client backed by an in-memory event list.
It goes through the real ``CalendarProviderClient`` availability and booking
logic; only the wire calls are replaced.  Tests reach it through the
``fake_client`` fixture so no test module has to import from ``tests``.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable
from datetime import datetime
from typing import Any, ClassVar

import pytest

from bookbridge.config import ProviderOAuthConfig
from bookbridge.errors import ProviderAPIError
from bookbridge.models import (
    CalendarConnection,
    CalendarEvent,
    CalendarEventCreate,
    CalendarEventUpdate,
    CalendarProviderName,
    OAuthCredentials,
    ProviderCalendar,
)
from bookbridge.providers.base import CalendarProviderClient
from bookbridge.slots import overlaps

TEST_OAUTH = ProviderOAuthConfig(
    client_id="client-id",
    client_secret="client-secret",
    redirect_uri="http://localhost:40300/api/oauth/callback",
)

_event_ids = itertools.count(1)


class FakeCalendarClient(CalendarProviderClient):
    """In-memory provider client with optional latency and failure injection."""

    provider: ClassVar[CalendarProviderName] = CalendarProviderName.google
    api_base_url: ClassVar[str] = "https://calendar.invalid"
    scopes: ClassVar[tuple[str, ...]] = ("calendar",)

    def __init__(
        self,
        provider: CalendarProviderName = CalendarProviderName.google,
        *,
        events: list[CalendarEvent] | None = None,
        delay: float = 0.0,
        fail_with: Exception | None = None,
        healthy: bool = True,
        **kwargs: Any,
    ) -> None:
        # Instance attribute shadows the class-level provider.
        self.provider = provider  # type: ignore[misc]
        super().__init__(
            TEST_OAUTH,
            credentials=OAuthCredentials(access_token="access-token", refresh_token="refresh"),
            **kwargs,
        )
        self.events: list[CalendarEvent] = list(events or [])
        self.delay = delay
        self.fail_with = fail_with
        self.healthy = healthy
        self.created: list[CalendarEvent] = []
        self.deleted: list[str] = []
        self.list_calls = 0

    @property
    def token_url(self) -> str:
        return "https://login.invalid/token"

    @property
    def authorize_url(self) -> str:
        return "https://login.invalid/authorize"

    async def _maybe_fail(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with

    async def list_events(
        self,
        calendar_id: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        max_results: int | None = None,
        order_by: str = "startTime",
    ) -> list[CalendarEvent]:
        self.list_calls += 1
        await self._maybe_fail()
        selected = [
            event
            for event in self.events
            if (time_min is None or event.end_at > time_min)
            and (time_max is None or event.start_at < time_max)
        ]
        selected.sort(key=lambda event: event.start_at)
        return selected[:max_results] if max_results is not None else selected

    async def get_event(self, calendar_id: str, event_id: str) -> CalendarEvent | None:
        await self._maybe_fail()
        return next((event for event in self.events if event.id == event_id), None)

    async def create_event(self, calendar_id: str, event: CalendarEventCreate) -> CalendarEvent:
        await self._maybe_fail()
        # Yield so concurrent bookings interleave the way real I/O would.
        await asyncio.sleep(0)
        created = CalendarEvent(
            id=f"evt-{next(_event_ids)}",
            title=event.title,
            start_at=event.start_at,
            end_at=event.end_at,
            timezone=event.timezone,
            description=event.description,
            attendees=event.attendees,
            show_as=event.show_as,
        )
        self.events.append(created)
        self.created.append(created)
        return created

    async def update_event(
        self, calendar_id: str, event_id: str, patch: CalendarEventUpdate
    ) -> CalendarEvent:
        existing = await self.get_event(calendar_id, event_id)
        if existing is None:
            raise ProviderAPIError(status_code=404, body="not found", provider="fake")
        updated = existing.model_copy(update=patch.model_dump(exclude_none=True))
        self.events = [updated if event.id == event_id else event for event in self.events]
        return updated

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        await self._maybe_fail()
        self.deleted.append(event_id)
        self.events = [event for event in self.events if event.id != event_id]

    async def list_calendars(self) -> list[ProviderCalendar]:
        return [ProviderCalendar(id="primary", name="Primary", is_default=True)]

    async def _health_probe(self) -> None:
        await self._maybe_fail()
        if not self.healthy:
            raise ProviderAPIError(status_code=500, body="backend unavailable", provider="fake")

    def busy_between(self, start: datetime, end: datetime) -> bool:
        return any(
            overlaps(event.start_at, event.end_at, start, end)
            for event in self.events
            if event.blocks_time
        )


def make_event(
    start: datetime,
    end: datetime,
    *,
    event_id: str | None = None,
    title: str = "Existing appointment",
    **overrides: Any,
) -> CalendarEvent:
    return CalendarEvent(
        id=event_id or f"existing-{next(_event_ids)}",
        title=title,
        start_at=start,
        end_at=end,
        timezone="UTC",
        **overrides,
    )


def make_connection(
    calendar_id: str = "primary",
    *,
    provider: CalendarProviderName = CalendarProviderName.google,
    staff_member: str | None = None,
    is_primary: bool = False,
    active: bool = True,
    access_token: str = "access-token",
    refresh_token: str | None = "refresh-token",
    connection_id: str = "",
) -> CalendarConnection:
    return CalendarConnection(
        id=connection_id,
        provider=provider,
        calendar_id=calendar_id,
        name=calendar_id.title(),
        staff_member=staff_member,
        credentials=OAuthCredentials(access_token=access_token, refresh_token=refresh_token),
        is_primary=is_primary,
        active=active,
        timezone="UTC",
    )


@pytest.fixture
def fake_client() -> Callable[..., FakeCalendarClient]:
    """Factory for ``FakeCalendarClient`` instances."""
    return FakeCalendarClient


@pytest.fixture
def event_factory() -> Callable[..., CalendarEvent]:
    return make_event


@pytest.fixture
def connection_factory() -> Callable[..., CalendarConnection]:
    return make_connection
