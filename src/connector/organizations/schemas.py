"""Pydantic schemas for organizations and synchronization runs.

Defines:
- EntityCapabilities: the per-entity (can_push_to_local, can_push_to_external)
  pair, with from_stored() as the single place where the legacy bare-boolean
  encoding is upgraded
- Organization / OrganizationCreate: the organization record as seen by the
  sync-settings services
- SynchronizationStatus / SynchronizationRun: the read-only run log
- DisplayableEntity: per-entity row for settings screens
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator

DEFAULT_ORGANIZATION_NAME = "Default Group name"


# ── Entity Capabilities ─────────────────────────────────────────────────────


class EntityCapabilities(BaseModel):
    """Whether an organization lets an entity type flow in each direction."""

    can_push_to_local: bool = Field(
        default=False,
        validation_alias=AliasChoices("can_push_to_local", "canPushToLocal", "can_push_to_connec"),
    )
    can_push_to_external: bool = Field(
        default=False,
        validation_alias=AliasChoices("can_push_to_external", "canPushToExternal"),
    )

    @field_validator("can_push_to_local", "can_push_to_external", mode="before")
    @classmethod
    def _null_is_disabled(cls, value: Any) -> Any:
        return False if value is None else value

    @classmethod
    def both(cls, enabled: bool) -> EntityCapabilities:
        return cls(can_push_to_local=enabled, can_push_to_external=enabled)

    @classmethod
    def from_stored(cls, value: Any) -> EntityCapabilities:
        """Normalize a persisted synchronized_entities value to the pair form.

        Accepts the current shape (a mapping with one flag per direction) and
        the legacy shape, a bare flag meaning "enabled in both directions".
        A missing legacy flag (None) reads as disabled, as does a null
        direction inside a mapping. Rows written by older releases keep the
        local direction under can_push_to_connec.

        Raises:
            ValueError: If the value is neither shape.
        """
        if isinstance(value, cls):
            return value
        if value is None or isinstance(value, bool):
            return cls.both(bool(value))
        if isinstance(value, dict):
            return cls.model_validate(value)
        raise ValueError(f"Unsupported synchronized entity value: {value!r}")

    def merged_with(self, enabled: bool) -> EntityCapabilities:
        """Return a copy where each direction is `current or enabled`."""
        return EntityCapabilities(
            can_push_to_local=self.can_push_to_local or enabled,
            can_push_to_external=self.can_push_to_external or enabled,
        )


def normalize_synchronized_entities(raw: Any) -> dict[str, EntityCapabilities]:
    """Normalize a whole synchronized_entities mapping (None reads as empty)."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"synchronized_entities must be a mapping, got {type(raw).__name__}")
    return {str(key): EntityCapabilities.from_stored(value) for key, value in raw.items()}


def dump_synchronized_entities(entities: dict[str, EntityCapabilities]) -> dict[str, dict[str, bool]]:
    """Serialize the pair form for the JSON column."""
    return {key: value.model_dump() for key, value in entities.items()}


# ── Organization ────────────────────────────────────────────────────────────


class OrganizationCreate(BaseModel):
    """Schema for creating an organization.

    synchronized_entities is filled by OrganizationSyncState.initialize()
    before the record is persisted.
    """

    uid: str = Field(min_length=1, max_length=200)
    name: str = Field(default="", max_length=300, validate_default=True)
    synchronized_entities: dict[str, EntityCapabilities] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _default_name(cls, value: str) -> str:
        return value.strip() or DEFAULT_ORGANIZATION_NAME

    @field_validator("synchronized_entities", mode="before")
    @classmethod
    def _normalize_entities(cls, value: Any) -> dict[str, EntityCapabilities]:
        return normalize_synchronized_entities(value)


class Organization(BaseModel):
    """Organization record (includes all persisted fields)."""

    id: str
    tenant: str
    uid: str
    name: str
    oauth_provider: str | None = None
    oauth_uid: str | None = None
    credentials: str | None = Field(default=None, repr=False)
    sync_enabled: bool = False
    historical_data: bool = False
    date_filtering_limit: datetime | None = None
    synchronized_entities: dict[str, EntityCapabilities] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("synchronized_entities", mode="before")
    @classmethod
    def _normalize_entities(cls, value: Any) -> dict[str, EntityCapabilities]:
        return normalize_synchronized_entities(value)


# ── Synchronization Runs ────────────────────────────────────────────────────


class SynchronizationStatus(str, Enum):
    """Lifecycle status of a synchronization run."""

    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"

    @property
    def is_terminal(self) -> bool:
        return self is not SynchronizationStatus.RUNNING


class SynchronizationRun(BaseModel):
    """A synchronization run as recorded by the scheduler."""

    id: int
    organization_id: str
    status: SynchronizationStatus
    partial: bool = False
    message: str | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_error(self) -> bool:
        return self.status is SynchronizationStatus.ERROR

    @property
    def is_complete_success(self) -> bool:
        return self.status is SynchronizationStatus.SUCCESS and not self.partial


# ── Display ─────────────────────────────────────────────────────────────────


class DisplayableEntity(BaseModel):
    """Entity type as shown on an organization's synchronization settings."""

    local_name: str
    external_name: str
    can_push_to_local: bool
    can_push_to_external: bool
