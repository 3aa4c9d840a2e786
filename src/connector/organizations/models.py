"""Persistence models for organizations and their synchronization runs.

- OrganizationModel: tenant-scoped account linking the local system to one
  external system, carrying the per-entity permission map and the
  historical-data settings
- SynchronizationModel: one row per synchronization run, appended by the
  scheduler and only read by the sync-settings services

Unique constraints are scoped to tenant so that uid collisions never leak
across tenants.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.connector.core.database import Base


class OrganizationModel(Base):
    """Organization linked to an external system.

    synchronized_entities is stored as JSON and may still hold the legacy
    shape (identifier -> bare boolean) for rows written by older releases;
    the repository normalizes it on load.
    """

    __tablename__ = "organizations"
    __table_args__ = (
        UniqueConstraint("tenant", "uid", name="uq_organizations_tenant_uid"),
        UniqueConstraint("oauth_uid", name="uq_organizations_oauth_uid"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
        default=uuid.uuid4,
    )
    tenant: Mapped[str] = mapped_column(String(100), nullable=False)
    uid: Mapped[str] = mapped_column(String(200), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    oauth_provider: Mapped[str | None] = mapped_column(String(100), nullable=True)
    oauth_uid: Mapped[str | None] = mapped_column(String(200), nullable=True)
    credentials: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    historical_data: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    date_filtering_limit: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    synchronized_entities: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class SynchronizationModel(Base):
    """A single synchronization run for an organization.

    The integer primary key doubles as the insertion sequence used to break
    created_at ties when ordering runs.
    """

    __tablename__ = "synchronizations"
    __table_args__ = (
        Index("ix_synchronizations_org_created", "organization_id", "created_at"),
        Index("ix_synchronizations_org_status", "organization_id", "status", "partial"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(30), default="RUNNING", server_default=text("'RUNNING'")
    )
    partial: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
