"""FastAPI dependency providers for the engine API.

The orchestrator and the connection registry are module-level singletons
created in the app lifespan.  Routers reach them through ``get_orchestrator``
and ``get_registry`` so tests can swap either via ``app.dependency_overrides``.
"""

from __future__ import annotations

import logging

from bookbridge.config import BookbridgeConfig
from bookbridge.orchestrator import CalendarOrchestrator
from bookbridge.registry import ConnectionRegistry, InMemoryConnectionRegistry

logger = logging.getLogger(__name__)

_orchestrator: CalendarOrchestrator | None = None
_registry: ConnectionRegistry | None = None


def init_dependencies(
    config: BookbridgeConfig | None = None,
    *,
    registry: ConnectionRegistry | None = None,
) -> tuple[CalendarOrchestrator, ConnectionRegistry]:
    """Initialize the module-level singletons.

    Called once during app startup.  Without an explicit *registry* the
    connections declared in *config* seed an in-memory one.
    """
    global _orchestrator, _registry  # noqa: PLW0603

    config = config or BookbridgeConfig()
    if registry is None:
        registry = InMemoryConnectionRegistry(config.connections)

    _registry = registry
    _orchestrator = CalendarOrchestrator(
        config.engine,
        providers=config.providers,
        registry=registry,
    )
    logger.info(
        "Engine dependencies initialized (%d tenant(s) from config)", len(config.connections)
    )
    return _orchestrator, _registry


async def shutdown_dependencies() -> None:
    """Close provider clients and drop the singletons. Called during app shutdown."""
    global _orchestrator, _registry  # noqa: PLW0603

    if _orchestrator is not None:
        await _orchestrator.aclose()
        _orchestrator = None
    _registry = None


def get_orchestrator() -> CalendarOrchestrator:
    """FastAPI dependency: provides the CalendarOrchestrator singleton."""
    if _orchestrator is None:
        raise RuntimeError("CalendarOrchestrator not initialized; call init_dependencies() first")
    return _orchestrator


def get_registry() -> ConnectionRegistry:
    """FastAPI dependency: provides the ConnectionRegistry singleton."""
    if _registry is None:
        raise RuntimeError("ConnectionRegistry not initialized; call init_dependencies() first")
    return _registry
