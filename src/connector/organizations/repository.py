"""Organization and synchronization-run repositories -- async persistence.

Provides OrganizationRepository and SynchronizationRepository with the
session_factory callable pattern. Both convert between SQLAlchemy rows and
the Pydantic schemas in schemas.py; synchronized_entities is normalized to
the pair form on every load.

OrganizationRepository.locked() is the atomic read-modify-write scope used by
every mutation of an organization's sync settings: the row is loaded with
SELECT ... FOR UPDATE and the mutated record is committed on exit, so
concurrent resets or latch toggles on the same organization are serialized.

Database errors are wrapped in PersistenceError at this boundary.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.connector.organizations.models import OrganizationModel, SynchronizationModel
from src.connector.organizations.schemas import (
    Organization,
    OrganizationCreate,
    SynchronizationRun,
    SynchronizationStatus,
    dump_synchronized_entities,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


# ── Errors ──────────────────────────────────────────────────────────────────


class PersistenceError(RuntimeError):
    """Raised when the backing store fails to read or write a record."""


class OrganizationNotFoundError(LookupError):
    """Raised when no organization matches the tenant and id."""

    def __init__(self, tenant: str, organization_id: str) -> None:
        self.tenant = tenant
        self.organization_id = organization_id
        super().__init__(f"Organization not found: {organization_id} (tenant={tenant})")


class DuplicateOrganizationError(ValueError):
    """Raised when a uniqueness rule on organizations is violated."""


class SynchronizationNotFoundError(LookupError):
    """Raised when no synchronization run matches the id."""


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_organization(model: OrganizationModel) -> Organization:
    """Convert OrganizationModel to Organization, upgrading legacy entity flags."""
    return Organization(
        id=str(model.id),
        tenant=model.tenant,
        uid=model.uid,
        name=model.name,
        oauth_provider=model.oauth_provider,
        oauth_uid=model.oauth_uid,
        credentials=model.credentials,
        sync_enabled=bool(model.sync_enabled),
        historical_data=bool(model.historical_data),
        date_filtering_limit=model.date_filtering_limit,
        synchronized_entities=model.synchronized_entities or {},
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _apply_organization(organization: Organization, model: OrganizationModel) -> None:
    """Copy the mutable fields of an Organization onto its row."""
    model.name = organization.name
    model.oauth_provider = organization.oauth_provider
    model.oauth_uid = organization.oauth_uid
    model.credentials = organization.credentials
    model.sync_enabled = organization.sync_enabled
    model.historical_data = organization.historical_data
    model.date_filtering_limit = organization.date_filtering_limit
    # Assign a fresh dict so the JSON column is flagged as modified
    model.synchronized_entities = dump_synchronized_entities(organization.synchronized_entities)


def _model_to_run(model: SynchronizationModel) -> SynchronizationRun:
    """Convert SynchronizationModel to SynchronizationRun."""
    return SynchronizationRun(
        id=model.id,
        organization_id=str(model.organization_id),
        status=SynchronizationStatus(model.status),
        partial=bool(model.partial),
        message=model.message,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _duplicate_error(exc: IntegrityError) -> DuplicateOrganizationError | None:
    """Map a unique-constraint violation to DuplicateOrganizationError."""
    detail = str(exc.orig)
    if "uq_organizations_oauth_uid" in detail:
        return DuplicateOrganizationError("This account has already been linked")
    if "uq_organizations_tenant_uid" in detail:
        return DuplicateOrganizationError("Organization uid already exists for this tenant")
    return None


# ── Organization Repository ─────────────────────────────────────────────────


class OrganizationRepository:
    """Async persistence for organizations.

    All lookups are scoped by tenant.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        sessions = self._session_factory()
        try:
            yield await anext(sessions)
        finally:
            await sessions.aclose()

    async def create(self, tenant: str, data: OrganizationCreate) -> Organization:
        """Persist a new organization.

        Args:
            tenant: Tenant identifier.
            data: OrganizationCreate with synchronized_entities already
                initialized.

        Returns:
            The persisted Organization.

        Raises:
            DuplicateOrganizationError: If the uid already exists in the tenant.
            PersistenceError: On any other database failure.
        """
        async with self._session() as session:
            model = OrganizationModel(
                id=uuid.uuid4(),
                tenant=tenant,
                uid=data.uid,
                name=data.name,
                synchronized_entities=dump_synchronized_entities(data.synchronized_entities),
            )
            session.add(model)
            try:
                await session.commit()
                await session.refresh(model)
            except IntegrityError as exc:
                await session.rollback()
                duplicate = _duplicate_error(exc)
                if duplicate is not None:
                    raise duplicate from exc
                raise PersistenceError(f"Failed to create organization {data.uid}") from exc
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error("organization.create_failed", tenant=tenant, uid=data.uid, error=str(exc))
                raise PersistenceError(f"Failed to create organization {data.uid}") from exc

            logger.info("organization.created", tenant=tenant, organization_id=str(model.id), uid=data.uid)
            return _model_to_organization(model)

    async def get(self, tenant: str, organization_id: str) -> Organization | None:
        """Get an organization by id, None if absent (or the id is not a UUID)."""
        try:
            org_uuid = uuid.UUID(organization_id)
        except ValueError:
            return None

        async for session in self._session_factory():
            stmt = select(OrganizationModel).where(
                OrganizationModel.tenant == tenant,
                OrganizationModel.id == org_uuid,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_organization(model)

    async def get_by_uid(self, tenant: str, uid: str) -> Organization | None:
        """Get an organization by its external uid within a tenant."""
        async for session in self._session_factory():
            stmt = select(OrganizationModel).where(
                OrganizationModel.tenant == tenant,
                OrganizationModel.uid == uid,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_organization(model)

    async def list_ids(self) -> list[tuple[str, str]]:
        """Return (tenant, organization_id) for every organization."""
        async for session in self._session_factory():
            result = await session.execute(
                select(OrganizationModel.tenant, OrganizationModel.id).order_by(
                    OrganizationModel.created_at
                )
            )
            return [(tenant, str(org_id)) for tenant, org_id in result.all()]
        return []

    @asynccontextmanager
    async def locked(self, tenant: str, organization_id: str) -> AsyncIterator[Organization]:
        """Atomic read-modify-write scope for one organization.

        Yields the organization loaded under a row lock. Mutations made to the
        yielded object are written back and committed when the block exits
        normally; an exception inside the block rolls back and propagates.

        Raises:
            OrganizationNotFoundError: If the organization does not exist.
            DuplicateOrganizationError: If the write violates a uniqueness rule.
            PersistenceError: If the lock, read, or write fails.
        """
        try:
            org_uuid = uuid.UUID(organization_id)
        except ValueError:
            raise OrganizationNotFoundError(tenant, organization_id) from None

        async with self._session() as session:
            try:
                stmt = (
                    select(OrganizationModel)
                    .where(
                        OrganizationModel.tenant == tenant,
                        OrganizationModel.id == org_uuid,
                    )
                    .with_for_update()
                )
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error(
                    "organization.lock_failed",
                    tenant=tenant,
                    organization_id=organization_id,
                    error=str(exc),
                )
                raise PersistenceError(f"Failed to lock organization {organization_id}") from exc

            if model is None:
                await session.rollback()
                raise OrganizationNotFoundError(tenant, organization_id)

            organization = _model_to_organization(model)
            try:
                yield organization
            except Exception:
                await session.rollback()
                raise

            _apply_organization(organization, model)
            try:
                await session.commit()
                await session.refresh(model)
            except IntegrityError as exc:
                await session.rollback()
                duplicate = _duplicate_error(exc)
                if duplicate is not None:
                    raise duplicate from exc
                raise PersistenceError(f"Failed to save organization {organization_id}") from exc
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error(
                    "organization.save_failed",
                    tenant=tenant,
                    organization_id=organization_id,
                    error=str(exc),
                )
                raise PersistenceError(f"Failed to save organization {organization_id}") from exc

            organization.updated_at = model.updated_at

    async def link_credentials(
        self,
        tenant: str,
        organization_id: str,
        *,
        provider: str,
        oauth_uid: str,
        credentials: str,
    ) -> Organization:
        """Store the external account identity and its opaque credential blob.

        Raises:
            DuplicateOrganizationError: If the external account is already
                linked to another organization.
        """
        async with self.locked(tenant, organization_id) as organization:
            organization.oauth_provider = provider
            organization.oauth_uid = oauth_uid
            organization.credentials = credentials
        logger.info("organization.credentials_linked", tenant=tenant, organization_id=organization_id, provider=provider)
        return organization

    async def clear_credentials(self, tenant: str, organization_id: str) -> Organization:
        """Forget the external account link and stop synchronizing."""
        async with self.locked(tenant, organization_id) as organization:
            organization.oauth_uid = None
            organization.credentials = None
            organization.sync_enabled = False
        logger.info("organization.credentials_cleared", tenant=tenant, organization_id=organization_id)
        return organization


# ── Synchronization Repository ──────────────────────────────────────────────


class SynchronizationRepository:
    """Append/query access to synchronization runs.

    Runs are appended and finished by the scheduler. The sync-settings
    services only use the query methods.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def append(
        self,
        organization_id: str,
        status: SynchronizationStatus = SynchronizationStatus.RUNNING,
        partial: bool = False,
        message: str | None = None,
    ) -> SynchronizationRun:
        """Record a new run for an organization."""
        async for session in self._session_factory():
            model = SynchronizationModel(
                organization_id=uuid.UUID(organization_id),
                status=status.value,
                partial=partial,
                message=message,
            )
            session.add(model)
            try:
                await session.commit()
                await session.refresh(model)
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceError(f"Failed to record synchronization for {organization_id}") from exc
            return _model_to_run(model)

    async def finish(
        self,
        run_id: int,
        status: SynchronizationStatus,
        partial: bool = False,
        message: str | None = None,
    ) -> SynchronizationRun:
        """Move a RUNNING run to a terminal status.

        Raises:
            SynchronizationNotFoundError: If the run does not exist.
            ValueError: If the run is already terminal or the status is RUNNING.
        """
        if not status.is_terminal:
            raise ValueError("A run can only be finished with a terminal status")

        async for session in self._session_factory():
            model = await session.get(SynchronizationModel, run_id, with_for_update=True)
            if model is None:
                raise SynchronizationNotFoundError(f"Synchronization not found: {run_id}")
            if SynchronizationStatus(model.status).is_terminal:
                raise ValueError(f"Synchronization {run_id} is already {model.status}")

            model.status = status.value
            model.partial = partial
            model.message = message
            try:
                await session.commit()
                await session.refresh(model)
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceError(f"Failed to finish synchronization {run_id}") from exc
            return _model_to_run(model)

    async def last_successful(self, organization_id: str) -> SynchronizationRun | None:
        """Most recently updated non-partial SUCCESS run, None if there is none."""
        async for session in self._session_factory():
            stmt = (
                select(SynchronizationModel)
                .where(
                    SynchronizationModel.organization_id == uuid.UUID(organization_id),
                    SynchronizationModel.status == SynchronizationStatus.SUCCESS.value,
                    SynchronizationModel.partial.is_(False),
                )
                .order_by(SynchronizationModel.updated_at.desc(), SynchronizationModel.id.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_run(model) if model is not None else None

    async def most_recent(self, organization_id: str, limit: int) -> list[SynchronizationRun]:
        """Most recently created runs, newest first; ties broken by insertion sequence."""
        async for session in self._session_factory():
            stmt = (
                select(SynchronizationModel)
                .where(SynchronizationModel.organization_id == uuid.UUID(organization_id))
                .order_by(SynchronizationModel.created_at.desc(), SynchronizationModel.id.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_run(m) for m in result.scalars().all()]
        return []

    async def first_created_at(self, organization_id: str) -> datetime | None:
        """created_at of the earliest run, None if the organization has no runs."""
        async for session in self._session_factory():
            stmt = select(func.min(SynchronizationModel.created_at)).where(
                SynchronizationModel.organization_id == uuid.UUID(organization_id)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()
        return None
