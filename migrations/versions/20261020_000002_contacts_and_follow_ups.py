"""Contacts and interaction follow-ups.

Revision ID: 20261020_000002
Revises: 20261019_000001
Create Date: 2026-10-20 00:00:02
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261020_000002"
down_revision: Union[str, Sequence[str], None] = "20261019_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "contacts",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("organization_id", sa.Text(), nullable=False),
        sa.Column("first_name", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("last_name", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Text(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.Text(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("deleted_at", sa.Text(), nullable=True),
    )
    op.create_index("ix_contacts_organization", "contacts", ["organization_id", "deleted_at"], unique=False)

    op.add_column(
        "interactions",
        sa.Column("follow_up_required", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )
    op.add_column("interactions", sa.Column("follow_up_date", sa.Text(), nullable=True))
    op.create_index(
        "ix_interactions_follow_up",
        "interactions",
        ["principal_id", "follow_up_required", "follow_up_date"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_interactions_follow_up", table_name="interactions")
    with op.batch_alter_table("interactions") as batch_op:
        batch_op.drop_column("follow_up_date")
        batch_op.drop_column("follow_up_required")
    op.drop_index("ix_contacts_organization", table_name="contacts")
    op.drop_table("contacts")
