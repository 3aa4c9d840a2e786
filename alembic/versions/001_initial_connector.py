"""Initial connector schema: organizations and synchronization runs.

Revision ID: 001_initial_connector
Revises:
Create Date: 2026-10-18

Creates two tables:
- organizations: per-tenant link to an external system with the entity
  permission map and the historical-data settings
- synchronizations: append-only run log, ordered by created_at with the
  bigint id as insertion sequence
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSON, UUID

# revision identifiers, used by Alembic.
revision: str = "001_initial_connector"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── organizations table ─────────────────────────────────────────────

    op.create_table(
        "organizations",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("tenant", sa.String(100), nullable=False),
        sa.Column("uid", sa.String(200), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("oauth_provider", sa.String(100), nullable=True),
        sa.Column("oauth_uid", sa.String(200), nullable=True),
        sa.Column("credentials", sa.Text(), nullable=True),
        sa.Column(
            "sync_enabled",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        sa.Column(
            "historical_data",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        sa.Column("date_filtering_limit", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "synchronized_entities",
            JSON(),
            server_default=sa.text("'{}'::json"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_organizations"),
        sa.UniqueConstraint("tenant", "uid", name="uq_organizations_tenant_uid"),
        sa.UniqueConstraint("oauth_uid", name="uq_organizations_oauth_uid"),
    )

    # ── synchronizations table ──────────────────────────────────────────

    op.create_table(
        "synchronizations",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("organization_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "status",
            sa.String(30),
            server_default=sa.text("'RUNNING'"),
            nullable=False,
        ),
        sa.Column(
            "partial",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name="pk_synchronizations"),
        sa.ForeignKeyConstraint(
            ["organization_id"],
            ["organizations.id"],
            name="fk_synchronizations_organization_id_organizations",
            ondelete="CASCADE",
        ),
    )
    op.create_index(
        "ix_synchronizations_org_created",
        "synchronizations",
        ["organization_id", "created_at"],
    )
    op.create_index(
        "ix_synchronizations_org_status",
        "synchronizations",
        ["organization_id", "status", "partial"],
    )


def downgrade() -> None:
    op.drop_index("ix_synchronizations_org_status", table_name="synchronizations")
    op.drop_index("ix_synchronizations_org_created", table_name="synchronizations")
    op.drop_table("synchronizations")
    op.drop_table("organizations")
