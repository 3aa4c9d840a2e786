"""Shared fixtures: in-memory repository test doubles and a test registry.

Provides:
- InMemoryOrganizationRepository: OrganizationRepository without a database,
  with a per-organization asyncio.Lock standing in for the row lock and a
  switch to simulate store failures
- InMemorySynchronizationRepository: run log with explicit timestamps
- registry: contact, invoice, payment (bound) and journal (unbound)
- A fixed clock for SyncWindowCalculator
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest

from src.connector.entities.registry import EntityRegistry, build_entity_registry
from src.connector.organizations.repository import (
    DuplicateOrganizationError,
    OrganizationNotFoundError,
    PersistenceError,
    SynchronizationNotFoundError,
)
from src.connector.organizations.schemas import (
    Organization,
    OrganizationCreate,
    SynchronizationRun,
    SynchronizationStatus,
)
from src.connector.sync.history import SynchronizationHistory
from src.connector.sync.state import OrganizationSyncState
from src.connector.sync.window import SyncWindowCalculator

TENANT = "tenant-test"
BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


# ── In-Memory Test Doubles ───────────────────────────────────────────────────


class InMemoryOrganizationRepository:
    """In-memory OrganizationRepository for testing without database."""

    def __init__(self) -> None:
        self._organizations: dict[str, Organization] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.fail_writes = False
        self.commits = 0

    async def create(self, tenant: str, data: OrganizationCreate) -> Organization:
        if await self.get_by_uid(tenant, data.uid) is not None:
            raise DuplicateOrganizationError("Organization uid already exists for this tenant")
        if self.fail_writes:
            raise PersistenceError(f"Failed to create organization {data.uid}")
        now = datetime.now(timezone.utc)
        organization = Organization(
            id=str(uuid.uuid4()),
            tenant=tenant,
            uid=data.uid,
            name=data.name,
            synchronized_entities=data.synchronized_entities,
            created_at=now,
            updated_at=now,
        )
        self._organizations[organization.id] = organization.model_copy(deep=True)
        return organization

    def put(self, organization: Organization) -> Organization:
        """Store an organization as-is (e.g., a row written by an older release)."""
        self._organizations[organization.id] = organization.model_copy(deep=True)
        return organization

    async def get(self, tenant: str, organization_id: str) -> Organization | None:
        organization = self._organizations.get(organization_id)
        if organization is None or organization.tenant != tenant:
            return None
        return organization.model_copy(deep=True)

    async def get_by_uid(self, tenant: str, uid: str) -> Organization | None:
        for organization in self._organizations.values():
            if organization.tenant == tenant and organization.uid == uid:
                return organization.model_copy(deep=True)
        return None

    async def list_ids(self) -> list[tuple[str, str]]:
        return [(o.tenant, o.id) for o in self._organizations.values()]

    @asynccontextmanager
    async def locked(self, tenant: str, organization_id: str) -> AsyncIterator[Organization]:
        lock = self._locks.setdefault(organization_id, asyncio.Lock())
        async with lock:
            stored = self._organizations.get(organization_id)
            if stored is None or stored.tenant != tenant:
                raise OrganizationNotFoundError(tenant, organization_id)

            organization = stored.model_copy(deep=True)
            yield organization

            if self.fail_writes:
                raise PersistenceError(f"Failed to save organization {organization_id}")
            for other in self._organizations.values():
                if (
                    organization.oauth_uid is not None
                    and other.id != organization_id
                    and other.oauth_uid == organization.oauth_uid
                ):
                    raise DuplicateOrganizationError("This account has already been linked")

            organization.updated_at = datetime.now(timezone.utc)
            self._organizations[organization_id] = organization.model_copy(deep=True)
            self.commits += 1

    async def link_credentials(
        self,
        tenant: str,
        organization_id: str,
        *,
        provider: str,
        oauth_uid: str,
        credentials: str,
    ) -> Organization:
        async with self.locked(tenant, organization_id) as organization:
            organization.oauth_provider = provider
            organization.oauth_uid = oauth_uid
            organization.credentials = credentials
        return organization

    async def clear_credentials(self, tenant: str, organization_id: str) -> Organization:
        async with self.locked(tenant, organization_id) as organization:
            organization.oauth_uid = None
            organization.credentials = None
            organization.sync_enabled = False
        return organization


class InMemorySynchronizationRepository:
    """In-memory SynchronizationRepository; ids are the insertion sequence."""

    def __init__(self) -> None:
        self._runs: dict[int, SynchronizationRun] = {}
        self._next_id = 1

    async def append(
        self,
        organization_id: str,
        status: SynchronizationStatus = SynchronizationStatus.RUNNING,
        partial: bool = False,
        message: str | None = None,
        *,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> SynchronizationRun:
        created = created_at or BASE_TIME + timedelta(minutes=self._next_id)
        run = SynchronizationRun(
            id=self._next_id,
            organization_id=organization_id,
            status=status,
            partial=partial,
            message=message,
            created_at=created,
            updated_at=updated_at or created,
        )
        self._runs[run.id] = run
        self._next_id += 1
        return run

    async def finish(
        self,
        run_id: int,
        status: SynchronizationStatus,
        partial: bool = False,
        message: str | None = None,
    ) -> SynchronizationRun:
        if not status.is_terminal:
            raise ValueError("A run can only be finished with a terminal status")
        run = self._runs.get(run_id)
        if run is None:
            raise SynchronizationNotFoundError(f"Synchronization not found: {run_id}")
        if run.status.is_terminal:
            raise ValueError(f"Synchronization {run_id} is already {run.status.value}")
        finished = run.model_copy(update={"status": status, "partial": partial, "message": message})
        self._runs[run_id] = finished
        return finished

    def _for(self, organization_id: str) -> list[SynchronizationRun]:
        return [r for r in self._runs.values() if r.organization_id == organization_id]

    async def last_successful(self, organization_id: str) -> SynchronizationRun | None:
        complete = [r for r in self._for(organization_id) if r.is_complete_success]
        if not complete:
            return None
        return max(complete, key=lambda r: (r.updated_at, r.id))

    async def most_recent(self, organization_id: str, limit: int) -> list[SynchronizationRun]:
        runs = sorted(self._for(organization_id), key=lambda r: (r.created_at, r.id), reverse=True)
        return runs[:limit]

    async def first_created_at(self, organization_id: str) -> datetime | None:
        runs = self._for(organization_id)
        if not runs:
            return None
        return min(r.created_at for r in runs)


class FixedClock:
    """Clock returning a settable time; advance() moves it forward."""

    def __init__(self, now: datetime = BASE_TIME) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ── Fixtures ──────────────────────────────────────────────────────────────────


@pytest.fixture
def registry() -> EntityRegistry:
    """contact, invoice and payment bound to the shipped providers; journal unbound."""
    return build_entity_registry(["contact", "invoice", "payment", "journal"])


@pytest.fixture
def organizations() -> InMemoryOrganizationRepository:
    return InMemoryOrganizationRepository()


@pytest.fixture
def runs() -> InMemorySynchronizationRepository:
    return InMemorySynchronizationRepository()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def sync_state(registry, organizations) -> OrganizationSyncState:
    return OrganizationSyncState(registry, organizations)


@pytest.fixture
def history(runs) -> SynchronizationHistory:
    return SynchronizationHistory(runs)


@pytest.fixture
def window(history, organizations, clock) -> SyncWindowCalculator:
    return SyncWindowCalculator(history, organizations, clock=clock)


@pytest.fixture
def make_organization(organizations):
    """Store an organization directly and return it (defaults to an empty map)."""

    def _make(**fields) -> Organization:
        data = {
            "id": str(uuid.uuid4()),
            "tenant": TENANT,
            "uid": f"uid-{uuid.uuid4().hex[:8]}",
            "name": "Acme",
            "created_at": BASE_TIME,
            "updated_at": BASE_TIME,
        }
        data.update(fields)
        return organizations.put(Organization(**data))

    return _make
