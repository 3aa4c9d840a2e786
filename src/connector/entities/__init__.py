"""Entity types -- capability providers and the registry that catalogs them.

Provides the Entity base class, the connector's shipped entity catalog, and
EntityRegistry with build_entity_registry() for startup registration.
"""

from src.connector.entities.base import CapabilityProvider, Entity
from src.connector.entities.registry import (
    EntityRegistry,
    EntityTypeDescriptor,
    build_entity_registry,
)

__all__ = [
    "CapabilityProvider",
    "Entity",
    "EntityRegistry",
    "EntityTypeDescriptor",
    "build_entity_registry",
]
