"""Engine HTTP API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that builds the orchestrator and closes provider clients
- Health endpoint at GET /api/health
- Tenant calendar and OAuth connection routers
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bookbridge.api.deps import init_dependencies, shutdown_dependencies
from bookbridge.api.middleware import register_error_handlers
from bookbridge.api.routers.calendar import router as calendar_router
from bookbridge.api.routers.oauth import router as oauth_router
from bookbridge.config import BookbridgeConfig
from bookbridge.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle for the orchestrator and its HTTP clients."""
    init_dependencies(app.state.config, registry=app.state.registry)
    yield
    await shutdown_dependencies()


def create_app(
    config: BookbridgeConfig | None = None,
    *,
    registry: ConnectionRegistry | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Parsed engine configuration.  Defaults to an empty configuration
        (no OAuth apps, no seeded connections).
    registry:
        Connection registry to serve.  Defaults to an in-memory registry
        seeded from ``config.connections``.
    cors_origins:
        Allowed CORS origins. Defaults to ["http://localhost:5173"].
    """
    if cors_origins is None:
        cors_origins = ["http://localhost:5173"]

    app = FastAPI(
        title="bookbridge Calendar Engine API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.config = config or BookbridgeConfig()
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(calendar_router)
    app.include_router(oauth_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    logger.info("Engine API created with %d CORS origin(s)", len(cors_origins))
    return app
