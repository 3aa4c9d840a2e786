"""Base entity abstraction -- the capability provider bound to an entity type.

Each syncable business-object kind (contact, invoice, ...) is represented by a
subclass of Entity. The class declares whether the connector is able to write
records of that kind to the local system and to the external system, and the
public names shown to users for both sides.

Entity classes are bound to identifiers once, at startup, by the
EntityRegistry (registry.py). Nothing resolves an Entity class from a string.
"""

from __future__ import annotations

from typing import ClassVar, Protocol, runtime_checkable


@runtime_checkable
class CapabilityProvider(Protocol):
    """Interface the registry consults for write capabilities and display names."""

    @classmethod
    def can_write_local(cls) -> bool: ...

    @classmethod
    def can_write_external(cls) -> bool: ...

    @classmethod
    def public_local_entity_name(cls) -> str: ...

    @classmethod
    def public_external_entity_name(cls) -> str: ...


class Entity:
    """Base class for every syncable entity type.

    Subclasses override the class attributes; the classmethods expose them
    through the CapabilityProvider interface.

    Attributes:
        local_entity_name: Name of the records in the local canonical system.
        external_entity_name: Name of the records in the external system.
        writes_local: Whether records can be pushed to the local system.
        writes_external: Whether records can be pushed to the external system.
    """

    local_entity_name: ClassVar[str] = ""
    external_entity_name: ClassVar[str] = ""
    writes_local: ClassVar[bool] = True
    writes_external: ClassVar[bool] = True

    def __init__(self, organization_id: str | None = None) -> None:
        self.organization_id = organization_id

    @classmethod
    def can_write_local(cls) -> bool:
        return cls.writes_local

    @classmethod
    def can_write_external(cls) -> bool:
        return cls.writes_external

    @classmethod
    def public_local_entity_name(cls) -> str:
        return cls.local_entity_name or cls.__name__

    @classmethod
    def public_external_entity_name(cls) -> str:
        return cls.external_entity_name or cls.__name__

    def __repr__(self) -> str:
        return f"{type(self).__name__}(organization_id={self.organization_id!r})"
