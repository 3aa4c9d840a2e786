"""REST API endpoints for organization synchronization settings.

Exposes organization creation (with the initial entity permission map), the
displayable entity settings, reset of the permission map, the historical-data
choice, the synchronization window, and the recent run log. Every endpoint is
scoped to the tenant from the X-Tenant-ID header.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.connector.api.deps import SyncServices, get_services, get_tenant
from src.connector.core.tenant import TenantContext
from src.connector.organizations.repository import (
    DuplicateOrganizationError,
    OrganizationNotFoundError,
    PersistenceError,
)
from src.connector.organizations.schemas import (
    DisplayableEntity,
    Organization,
    OrganizationCreate,
    SynchronizationRun,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/organizations", tags=["organizations"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class OrganizationResponse(BaseModel):
    """Organization data, serializes datetimes to ISO strings. Credentials are never returned."""

    id: str
    tenant: str
    uid: str
    name: str
    oauth_provider: str | None = None
    oauth_uid: str | None = None
    sync_enabled: bool = False
    historical_data: bool = False
    date_filtering_limit: str | None = None
    synchronized_entities: dict[str, dict[str, bool]] = Field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None


class SynchronizationWindowResponse(BaseModel):
    """Where the next incremental run starts and why."""

    watermark: str | None = None
    full_backfill: bool
    historical_state: str
    historical_data: bool
    date_filtering_limit: str | None = None
    last_three_failed: bool


class SynchronizationResponse(BaseModel):
    """A synchronization run."""

    id: int
    status: str
    partial: bool
    message: str | None = None
    created_at: str
    updated_at: str


# ── Request Schemas ──────────────────────────────────────────────────────────


class CreateOrganizationRequest(BaseModel):
    """Request body for creating an organization."""

    uid: str = Field(min_length=1, max_length=200)
    name: str = Field(default="", max_length=300)


class ResetSynchronizedEntitiesRequest(BaseModel):
    """Request body for reconciling the entity permission map."""

    default_enabled: bool = False


class HistoricalDataRequest(BaseModel):
    """Request body for the historical-data choice."""

    enabled: bool


class LinkCredentialsRequest(BaseModel):
    """Request body for storing the external account link."""

    provider: str = Field(min_length=1)
    oauth_uid: str = Field(min_length=1)
    credentials: str = Field(min_length=1)


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _organization_to_response(org: Organization) -> OrganizationResponse:
    """Convert Organization to OrganizationResponse."""
    return OrganizationResponse(
        id=org.id,
        tenant=org.tenant,
        uid=org.uid,
        name=org.name,
        oauth_provider=org.oauth_provider,
        oauth_uid=org.oauth_uid,
        sync_enabled=org.sync_enabled,
        historical_data=org.historical_data,
        date_filtering_limit=_iso(org.date_filtering_limit),
        synchronized_entities={k: v.model_dump() for k, v in org.synchronized_entities.items()},
        created_at=_iso(org.created_at),
        updated_at=_iso(org.updated_at),
    )


def _run_to_response(run: SynchronizationRun) -> SynchronizationResponse:
    """Convert SynchronizationRun to SynchronizationResponse."""
    return SynchronizationResponse(
        id=run.id,
        status=run.status.value,
        partial=run.partial,
        message=run.message,
        created_at=run.created_at.isoformat(),
        updated_at=run.updated_at.isoformat(),
    )


async def _get_organization(
    services: SyncServices, tenant: TenantContext, organization_id: str
) -> Organization:
    """Load an organization for the tenant, 404 if absent."""
    organization = await services.organizations.get(tenant.tenant_id, organization_id)
    if organization is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Organization not found: {organization_id}",
        )
    return organization


def _persistence_unavailable(exc: PersistenceError) -> HTTPException:
    logger.error("organizations_api.persistence_error", error=str(exc))
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Organization store unavailable",
    )


def _not_found(exc: OrganizationNotFoundError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Organization not found: {exc.organization_id}",
    )


# ── Organization Endpoints ───────────────────────────────────────────────────


@router.post("", response_model=OrganizationResponse, status_code=201)
async def create_organization(
    body: CreateOrganizationRequest,
    tenant: TenantContext = Depends(get_tenant),
    services: SyncServices = Depends(get_services),
) -> OrganizationResponse:
    """Create an organization with its initial entity permission map."""
    data = OrganizationCreate(uid=body.uid, name=body.name)
    services.sync_state.initialize(data)
    try:
        organization = await services.organizations.create(tenant.tenant_id, data)
    except DuplicateOrganizationError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except PersistenceError as exc:
        raise _persistence_unavailable(exc)
    return _organization_to_response(organization)


@router.get("/{organization_id}", response_model=OrganizationResponse)
async def get_organization(
    organization_id: str,
    tenant: TenantContext = Depends(get_tenant),
    services: SyncServices = Depends(get_services),
) -> OrganizationResponse:
    """Get a single organization by ID."""
    organization = await _get_organization(services, tenant, organization_id)
    return _organization_to_response(organization)


# ── Entity Settings Endpoints ────────────────────────────────────────────────


@router.get(
    "/{organization_id}/synchronized-entities",
    response_model=dict[str, DisplayableEntity],
)
async def list_synchronized_entities(
    organization_id: str,
    tenant: TenantContext = Depends(get_tenant),
    services: SyncServices = Depends(get_services),
) -> dict[str, DisplayableEntity]:
    """Entity types with display names and per-direction flags."""
    organization = await _get_organization(services, tenant, organization_id)
    return services.sync_state.displayable(organization)


@router.post(
    "/{organization_id}/synchronized-entities/reset",
    response_model=OrganizationResponse,
)
async def reset_synchronized_entities(
    organization_id: str,
    body: ResetSynchronizedEntitiesRequest,
    tenant: TenantContext = Depends(get_tenant),
    services: SyncServices = Depends(get_services),
) -> OrganizationResponse:
    """Reconcile the organization's entity permission map with the registry."""
    organization = await _get_organization(services, tenant, organization_id)
    try:
        organization = await services.sync_state.reset(organization, body.default_enabled)
    except OrganizationNotFoundError as exc:
        raise _not_found(exc)
    except PersistenceError as exc:
        raise _persistence_unavailable(exc)
    return _organization_to_response(organization)


# ── Synchronization Window Endpoints ─────────────────────────────────────────


@router.put("/{organization_id}/historical-data", response_model=OrganizationResponse)
async def set_historical_data(
    organization_id: str,
    body: HistoricalDataRequest,
    tenant: TenantContext = Depends(get_tenant),
    services: SyncServices = Depends(get_services),
) -> OrganizationResponse:
    """Record the historical-data choice. Once enabled it cannot be revoked."""
    organization = await _get_organization(services, tenant, organization_id)
    try:
        organization = await services.window.enable_historical_data(organization, body.enabled)
    except OrganizationNotFoundError as exc:
        raise _not_found(exc)
    except PersistenceError as exc:
        raise _persistence_unavailable(exc)
    return _organization_to_response(organization)


@router.get(
    "/{organization_id}/synchronization-window",
    response_model=SynchronizationWindowResponse,
)
async def get_synchronization_window(
    organization_id: str,
    tenant: TenantContext = Depends(get_tenant),
    services: SyncServices = Depends(get_services),
) -> SynchronizationWindowResponse:
    """Watermark of the next incremental run plus latch and failure state."""
    organization = await _get_organization(services, tenant, organization_id)
    watermark = await services.window.watermark(organization)
    return SynchronizationWindowResponse(
        watermark=_iso(watermark),
        full_backfill=watermark is None,
        historical_state=services.window.state(organization).value,
        historical_data=organization.historical_data,
        date_filtering_limit=_iso(organization.date_filtering_limit),
        last_three_failed=await services.history.last_three_failed(organization),
    )


@router.get(
    "/{organization_id}/synchronizations",
    response_model=list[SynchronizationResponse],
)
async def list_synchronizations(
    organization_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    tenant: TenantContext = Depends(get_tenant),
    services: SyncServices = Depends(get_services),
) -> list[SynchronizationResponse]:
    """Most recent synchronization runs, newest first."""
    organization = await _get_organization(services, tenant, organization_id)
    runs = await services.history.recent(organization, limit)
    return [_run_to_response(r) for r in runs]


# ── Credential Endpoints ─────────────────────────────────────────────────────


@router.put("/{organization_id}/credentials", response_model=OrganizationResponse)
async def link_credentials(
    organization_id: str,
    body: LinkCredentialsRequest,
    tenant: TenantContext = Depends(get_tenant),
    services: SyncServices = Depends(get_services),
) -> OrganizationResponse:
    """Store the external account link captured by the OAuth flow."""
    try:
        organization = await services.organizations.link_credentials(
            tenant.tenant_id,
            organization_id,
            provider=body.provider,
            oauth_uid=body.oauth_uid,
            credentials=body.credentials,
        )
    except OrganizationNotFoundError as exc:
        raise _not_found(exc)
    except DuplicateOrganizationError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except PersistenceError as exc:
        raise _persistence_unavailable(exc)
    return _organization_to_response(organization)


@router.delete("/{organization_id}/credentials", response_model=OrganizationResponse)
async def clear_credentials(
    organization_id: str,
    tenant: TenantContext = Depends(get_tenant),
    services: SyncServices = Depends(get_services),
) -> OrganizationResponse:
    """Forget the external account link and disable synchronization."""
    try:
        organization = await services.organizations.clear_credentials(tenant.tenant_id, organization_id)
    except OrganizationNotFoundError as exc:
        raise _not_found(exc)
    except PersistenceError as exc:
        raise _persistence_unavailable(exc)
    return _organization_to_response(organization)
