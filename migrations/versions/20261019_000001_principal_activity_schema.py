"""Principal activity source tables and snapshot store.

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp_column(name: str, *, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.Text(), nullable=True)
    return sa.Column(name, sa.Text(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP"))


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("is_principal", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_distributor", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("city", sa.Text(), nullable=True),
        sa.Column("state_province", sa.Text(), nullable=True),
        sa.Column("country", sa.Text(), nullable=True),
        _timestamp_column("created_at"),
        _timestamp_column("updated_at"),
        _timestamp_column("deleted_at", nullable=True),
        sa.CheckConstraint(
            "NOT (is_principal = 1 AND is_distributor = 1)",
            name="organizations_principal_distributor_exclusive",
        ),
    )
    op.create_index("ix_organizations_principal", "organizations", ["is_principal", "deleted_at"], unique=False)

    op.create_table(
        "products",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("sku", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _timestamp_column("created_at"),
        _timestamp_column("deleted_at", nullable=True),
    )

    op.create_table(
        "opportunities",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("principal_id", sa.Text(), nullable=True),
        sa.Column("organization_id", sa.Text(), nullable=True),
        sa.Column("product_id", sa.Text(), nullable=True),
        sa.Column("stage", sa.Text(), nullable=False, server_default=sa.text("'New Lead'")),
        sa.Column("probability_percent", sa.Float(), nullable=True),
        sa.Column("is_won", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp_column("created_at"),
        _timestamp_column("updated_at"),
        _timestamp_column("deleted_at", nullable=True),
    )
    op.create_index("ix_opportunities_principal", "opportunities", ["principal_id", "deleted_at"], unique=False)

    op.create_table(
        "opportunity_stage_changes",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("opportunity_id", sa.Text(), nullable=False),
        sa.Column("from_stage", sa.Text(), nullable=True),
        sa.Column("to_stage", sa.Text(), nullable=False),
        sa.Column("changed_at", sa.Text(), nullable=False),
    )
    op.create_index(
        "ix_opportunity_stage_changes_opportunity",
        "opportunity_stage_changes",
        ["opportunity_id", "changed_at"],
        unique=False,
    )

    op.create_table(
        "interactions",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("principal_id", sa.Text(), nullable=True),
        sa.Column("organization_id", sa.Text(), nullable=True),
        sa.Column("opportunity_id", sa.Text(), nullable=True),
        sa.Column("type", sa.Text(), nullable=False, server_default=sa.text("'EMAIL'")),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("interaction_date", sa.Text(), nullable=False),
        _timestamp_column("created_at"),
        _timestamp_column("deleted_at", nullable=True),
    )
    op.create_index(
        "ix_interactions_principal_date",
        "interactions",
        ["principal_id", "interaction_date"],
        unique=False,
    )

    op.create_table(
        "product_principals",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("product_id", sa.Text(), nullable=False),
        sa.Column("principal_id", sa.Text(), nullable=False),
        sa.Column("is_primary_principal", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("exclusive_rights", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("contract_start_date", sa.Text(), nullable=True),
        sa.Column("contract_end_date", sa.Text(), nullable=True),
        _timestamp_column("added_at"),
        _timestamp_column("removed_at", nullable=True),
    )
    op.create_index(
        "ix_product_principals_principal",
        "product_principals",
        ["principal_id", "removed_at"],
        unique=False,
    )

    op.create_table(
        "distributor_relationships",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("principal_id", sa.Text(), nullable=False),
        sa.Column("distributor_id", sa.Text(), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default=sa.text("'{}'")),
        _timestamp_column("created_at"),
        _timestamp_column("deleted_at", nullable=True),
        sa.UniqueConstraint("principal_id", "distributor_id", name="uq_distributor_relationships_pair"),
    )
    op.create_index(
        "ix_distributor_relationships_principal",
        "distributor_relationships",
        ["principal_id"],
        unique=False,
    )

    op.create_table(
        "pa_snapshot_versions",
        sa.Column("principal_id", sa.Text(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("built_at", sa.Text(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        _timestamp_column("created_at"),
        sa.PrimaryKeyConstraint("principal_id", "version", name="pk_pa_snapshot_versions"),
    )

    op.create_table(
        "pa_current_snapshot",
        sa.Column("principal_id", sa.Text(), primary_key=True),
        sa.Column("version", sa.Integer(), nullable=False),
        _timestamp_column("updated_at"),
    )


def downgrade() -> None:
    op.drop_table("pa_current_snapshot")
    op.drop_table("pa_snapshot_versions")
    op.drop_index("ix_distributor_relationships_principal", table_name="distributor_relationships")
    op.drop_table("distributor_relationships")
    op.drop_index("ix_product_principals_principal", table_name="product_principals")
    op.drop_table("product_principals")
    op.drop_index("ix_interactions_principal_date", table_name="interactions")
    op.drop_table("interactions")
    op.drop_index("ix_opportunity_stage_changes_opportunity", table_name="opportunity_stage_changes")
    op.drop_table("opportunity_stage_changes")
    op.drop_index("ix_opportunities_principal", table_name="opportunities")
    op.drop_table("opportunities")
    op.drop_table("products")
    op.drop_index("ix_organizations_principal", table_name="organizations")
    op.drop_table("organizations")
