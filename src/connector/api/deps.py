"""FastAPI dependency injection for tenant context and sync-settings services.

The services are built once in the application lifespan and stored on
app.state; the getters below return 503 when startup did not initialize them.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request, status

from src.connector.core.tenant import TENANT_HEADER, TenantContext, get_current_tenant
from src.connector.organizations.repository import (
    OrganizationRepository,
    SynchronizationRepository,
)
from src.connector.sync.history import SynchronizationHistory
from src.connector.sync.state import OrganizationSyncState
from src.connector.sync.window import SyncWindowCalculator


@dataclass
class SyncServices:
    """Everything the organization endpoints need, wired at startup."""

    organizations: OrganizationRepository
    synchronizations: SynchronizationRepository
    sync_state: OrganizationSyncState
    history: SynchronizationHistory
    window: SyncWindowCalculator


async def get_tenant() -> TenantContext:
    """Get the current tenant context (set by TenantMiddleware)."""
    try:
        return get_current_tenant()
    except RuntimeError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing {TENANT_HEADER} header",
        )


async def get_services(request: Request) -> SyncServices:
    """Retrieve SyncServices from app.state, 503 if not available."""
    services = getattr(request.app.state, "sync_services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Synchronization settings not initialized",
        )
    return services
