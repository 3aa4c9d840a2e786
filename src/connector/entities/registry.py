"""Entity registry -- the catalog of syncable entity types.

The EntityRegistry holds the entity-type identifiers known to the connector,
each optionally bound to a capability provider (an Entity subclass). It is
built once at startup from configuration via build_entity_registry() and
injected into the services that need it, so tests can substitute registries
freely.

Lookups are always by identifier or by provider class; identifiers are never
turned into class names at runtime.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass

import structlog

from src.connector.entities.base import CapabilityProvider

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EntityTypeDescriptor:
    """A registered entity type.

    Attributes:
        identifier: Stable symbolic name (e.g., "contact"). Used as the key of
            an organization's synchronized_entities map.
        provider: Class exposing the write capabilities and display names.
            None when the connector declares the identifier without an
            implementation; such types are fully permissive.
    """

    identifier: str
    provider: type[CapabilityProvider] | None = None

    @property
    def is_bound(self) -> bool:
        return self.provider is not None

    def capabilities(self) -> tuple[bool, bool]:
        """Return (can_write_local, can_write_external) for this entity type."""
        if self.provider is None:
            return True, True
        return bool(self.provider.can_write_local()), bool(self.provider.can_write_external())


class EntityRegistry:
    """Immutable-after-startup registry of entity types.

    Registration order is preserved; it is the order used when building an
    organization's synchronized_entities map.
    """

    def __init__(self, descriptors: Iterable[EntityTypeDescriptor] = ()) -> None:
        self._descriptors: dict[str, EntityTypeDescriptor] = {}
        self._by_provider: dict[type, str] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: EntityTypeDescriptor) -> None:
        """Register an entity type.

        Raises:
            ValueError: If the identifier, or the provider class, is already
                registered.
        """
        if descriptor.identifier in self._descriptors:
            raise ValueError(f"Entity type already registered: {descriptor.identifier}")
        if descriptor.provider is not None and descriptor.provider in self._by_provider:
            raise ValueError(
                f"Provider {descriptor.provider.__name__} already bound to "
                f"{self._by_provider[descriptor.provider]}"
            )

        self._descriptors[descriptor.identifier] = descriptor
        if descriptor.provider is not None:
            self._by_provider[descriptor.provider] = descriptor.identifier

        logger.debug(
            "entity_type_registered",
            entity_type=descriptor.identifier,
            provider=descriptor.provider.__name__ if descriptor.provider else None,
        )

    def descriptor(self, entity_type: str) -> EntityTypeDescriptor | None:
        return self._descriptors.get(entity_type)

    def resolve_capabilities(self, entity_type: str) -> tuple[bool, bool]:
        """Return (can_write_local, can_write_external) for an entity type.

        Unbound and unknown entity types resolve to (True, True).
        """
        descriptor = self._descriptors.get(entity_type)
        if descriptor is None:
            return True, True
        return descriptor.capabilities()

    def identify(self, entity: object | None) -> str | None:
        """Return the identifier of the entity type an instance belongs to.

        Walks the instance's class hierarchy so subclasses of a registered
        provider resolve to the same identifier. Returns None for None or for
        instances of unregistered classes.
        """
        if entity is None:
            return None
        for klass in type(entity).__mro__:
            identifier = self._by_provider.get(klass)
            if identifier is not None:
                return identifier
        return None

    @property
    def identifiers(self) -> list[str]:
        return list(self._descriptors)

    def __iter__(self) -> Iterator[EntityTypeDescriptor]:
        return iter(list(self._descriptors.values()))

    def __len__(self) -> int:
        return len(self._descriptors)

    def __contains__(self, entity_type: object) -> bool:
        return entity_type in self._descriptors


def build_entity_registry(
    identifiers: Iterable[str],
    providers: Mapping[str, type[CapabilityProvider]] | None = None,
) -> EntityRegistry:
    """Build the process registry from configured identifiers.

    Args:
        identifiers: Entity-type identifiers in declaration order
            (Settings.get_synchronized_entities()).
        providers: Static identifier -> provider table. Defaults to the
            connector's ENTITY_PROVIDERS.

    Returns:
        A populated EntityRegistry.
    """
    if providers is None:
        from src.connector.entities.catalog import ENTITY_PROVIDERS

        providers = ENTITY_PROVIDERS

    registry = EntityRegistry(
        EntityTypeDescriptor(identifier=identifier, provider=providers.get(identifier))
        for identifier in identifiers
    )

    unbound = [d.identifier for d in registry if not d.is_bound]
    logger.info(
        "entity_registry_built",
        entity_types=registry.identifiers,
        unbound=unbound,
    )
    return registry
