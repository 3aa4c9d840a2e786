"""FastAPI application factory.

Creates the app with tenant middleware, logging middleware, metrics middleware,
CORS, Sentry, lifespan events for database initialization and service wiring,
and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.connector.api.deps import SyncServices
from src.connector.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.connector.api.v1.router import router as v1_router
from src.connector.config import Settings, get_settings
from src.connector.core.database import close_db, get_session, init_db
from src.connector.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.connector.core.tenant import TenantMiddleware
from src.connector.entities.registry import EntityRegistry, build_entity_registry
from src.connector.organizations.repository import (
    OrganizationRepository,
    SynchronizationRepository,
)
from src.connector.sync.history import SynchronizationHistory
from src.connector.sync.state import OrganizationSyncState
from src.connector.sync.window import SyncWindowCalculator


def build_services(settings: Settings, registry: EntityRegistry | None = None) -> SyncServices:
    """Wire repositories and sync-settings services against the database session factory."""
    if registry is None:
        registry = build_entity_registry(settings.get_synchronized_entities())

    organizations = OrganizationRepository(session_factory=get_session)
    synchronizations = SynchronizationRepository(session_factory=get_session)
    history = SynchronizationHistory(synchronizations)

    return SyncServices(
        organizations=organizations,
        synchronizations=synchronizations,
        sync_state=OrganizationSyncState(registry, organizations),
        history=history,
        window=SyncWindowCalculator(history, organizations),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry, and services on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    app.state.sync_services = build_services(settings)
    log.info(
        "startup.sync_services_initialized",
        entity_types=app.state.sync_services.sync_state.registry.identifiers,
    )

    yield

    await close_db()
    log.info("shutdown.complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Organization Sync Connector API",
        version="0.1.0",
        description="Per-organization synchronization permissions and incremental sync windows",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Metrics and logging run inside the tenant scope so both see the tenant id
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(LoggingMiddleware)

    # Tenant middleware (resolves tenant context from the X-Tenant-ID header)
    app.add_middleware(TenantMiddleware)

    # CORS middleware (outermost)
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(v1_router, prefix="/api/v1")

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
