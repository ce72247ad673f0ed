"""Shared fixtures for the engine API tests.

The app is built with ``create_app()`` and its dependencies are swapped via
``app.dependency_overrides``; ``httpx.ASGITransport`` does not run the
lifespan, so nothing here talks to a real provider.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import httpx
import pytest
from fastapi import FastAPI

from bookbridge.api.app import create_app
from bookbridge.api.deps import get_orchestrator, get_registry
from bookbridge.api.routers.oauth import _clear_state_store
from bookbridge.config import BookbridgeConfig, EngineSettings, ProviderOAuthConfig
from bookbridge.models import CalendarProviderName
from bookbridge.orchestrator import CalendarOrchestrator
from bookbridge.registry import InMemoryConnectionRegistry

TENANT = "salon-1"


@pytest.fixture(autouse=True)
def clear_states():
    """Ensure the OAuth state store is empty before and after each test."""
    _clear_state_store()
    yield
    _clear_state_store()


@pytest.fixture
def front_desk(connection_factory):
    return connection_factory("front", is_primary=True)


@pytest.fixture
def calendar_client(fake_client):
    """The single fake provider client every connection is served by."""
    return fake_client()


@pytest.fixture
def registry(front_desk) -> InMemoryConnectionRegistry:
    return InMemoryConnectionRegistry({TENANT: [front_desk]})


@pytest.fixture
def oauth_config() -> BookbridgeConfig:
    return BookbridgeConfig(
        providers={
            CalendarProviderName.google: ProviderOAuthConfig(
                client_id="google-client",
                client_secret="google-secret",
                redirect_uri="http://test/api/oauth/google/callback",
            )
        }
    )


@pytest.fixture
async def orchestrator(
    calendar_client, registry, oauth_config
) -> AsyncIterator[CalendarOrchestrator]:
    orchestrator = CalendarOrchestrator(
        EngineSettings(),
        providers=oauth_config.providers,
        registry=registry,
        client_factory=lambda connection: calendar_client,
    )
    yield orchestrator
    await orchestrator.aclose()


@pytest.fixture
def app(orchestrator, registry, oauth_config) -> FastAPI:
    app = create_app(oauth_config, registry=registry)
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_registry] = lambda: registry
    return app


@pytest.fixture
async def api(app) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
        follow_redirects=False,
    ) as client:
        yield client
