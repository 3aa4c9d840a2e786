"""Per-organization entity permission map.

OrganizationSyncState builds and repairs an organization's
synchronized_entities map against the EntityRegistry and answers the
direction-gated permission queries the synchronization jobs ask before
writing a record.

Gating rule: a direction is allowed only when the organization's stored flag
AND the registry capability for that direction are both true.
"""

from __future__ import annotations

import structlog

from src.connector.core.monitoring import synchronized_entities_resets_total
from src.connector.entities.registry import EntityRegistry
from src.connector.organizations.repository import OrganizationRepository
from src.connector.organizations.schemas import (
    DisplayableEntity,
    EntityCapabilities,
    Organization,
    OrganizationCreate,
)

logger = structlog.get_logger(__name__)


def initial_synchronized_entities(registry: EntityRegistry) -> dict[str, EntityCapabilities]:
    """One entry per registered entity type, set to its registry capabilities."""
    entities: dict[str, EntityCapabilities] = {}
    for identifier in registry.identifiers:
        can_local, can_external = registry.resolve_capabilities(identifier)
        entities[identifier] = EntityCapabilities(
            can_push_to_local=can_local,
            can_push_to_external=can_external,
        )
    return entities


def reconcile_synchronized_entities(
    current: dict[str, EntityCapabilities],
    registry: EntityRegistry,
    default_enabled: bool,
) -> dict[str, EntityCapabilities]:
    """Repair a permission map against the registry.

    Entries for unregistered types are dropped, missing types are added with
    `default_enabled` in both directions, and existing flags become
    `flag or default_enabled` so a reset never disables anything. Applying it
    twice with the same default yields the same map.
    """
    reconciled: dict[str, EntityCapabilities] = {}
    for identifier in registry.identifiers:
        existing = current.get(identifier)
        if existing is None:
            reconciled[identifier] = EntityCapabilities.both(default_enabled)
        else:
            reconciled[identifier] = EntityCapabilities.from_stored(existing).merged_with(default_enabled)
    return reconciled


class OrganizationSyncState:
    """Builds, repairs, and queries organizations' synchronized_entities maps.

    Args:
        registry: The process entity registry.
        organizations: Repository used for the locked read-modify-write of reset().
    """

    def __init__(self, registry: EntityRegistry, organizations: OrganizationRepository) -> None:
        self._registry = registry
        self._organizations = organizations

    @property
    def registry(self) -> EntityRegistry:
        return self._registry

    def initialize(self, organization: Organization | OrganizationCreate) -> None:
        """Set the map to the registry capabilities. Called once at creation."""
        organization.synchronized_entities = initial_synchronized_entities(self._registry)

    async def reset(self, organization: Organization, default_enabled: bool = False) -> Organization:
        """Reconcile the stored map with the registry and persist it.

        Runs under the organization's row lock so concurrent resets do not
        lose updates. The caller's object is refreshed with the stored map.

        Raises:
            OrganizationNotFoundError: If the organization no longer exists.
            PersistenceError: If the store fails; nothing is swallowed.
        """
        async with self._organizations.locked(organization.tenant, organization.id) as current:
            before = set(current.synchronized_entities)
            current.synchronized_entities = reconcile_synchronized_entities(
                current.synchronized_entities,
                self._registry,
                default_enabled,
            )

        after = set(current.synchronized_entities)
        organization.synchronized_entities = current.synchronized_entities
        synchronized_entities_resets_total.labels(default_enabled=str(default_enabled).lower()).inc()
        logger.info(
            "synchronized_entities.reset",
            tenant=organization.tenant,
            organization_id=organization.id,
            default_enabled=default_enabled,
            added=sorted(after - before),
            removed=sorted(before - after),
        )
        return current

    def can_push_to_local(self, organization: Organization, entity: object | None) -> bool:
        """Whether records of this entity may be written to the local system."""
        return self._allowed(organization, entity, local=True)

    def can_push_to_external(self, organization: Organization, entity: object | None) -> bool:
        """Whether records of this entity may be written to the external system."""
        return self._allowed(organization, entity, local=False)

    def _allowed(self, organization: Organization, entity: object | None, *, local: bool) -> bool:
        identifier = self._registry.identify(entity)
        if identifier is None:
            return False

        flags = organization.synchronized_entities.get(identifier)
        if flags is None:
            return False

        can_local, can_external = self._registry.resolve_capabilities(identifier)
        if local:
            return flags.can_push_to_local and can_local
        return flags.can_push_to_external and can_external

    def displayable(self, organization: Organization) -> dict[str, DisplayableEntity]:
        """Settings rows for every stored entity type with a bound provider.

        Entity types without a provider (or no longer registered) are left
        out silently.
        """
        result: dict[str, DisplayableEntity] = {}
        for identifier, flags in organization.synchronized_entities.items():
            descriptor = self._registry.descriptor(identifier)
            if descriptor is None or descriptor.provider is None:
                continue
            result[identifier] = DisplayableEntity(
                local_name=descriptor.provider.public_local_entity_name(),
                external_name=descriptor.provider.public_external_entity_name(),
                can_push_to_local=flags.can_push_to_local,
                can_push_to_external=flags.can_push_to_external,
            )
        return result
