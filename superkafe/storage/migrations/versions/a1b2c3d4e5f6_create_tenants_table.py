"""create tenants table

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-09-02 10:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
import sqlmodel.sql.sqltypes
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a1b2c3d4e5f6"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the tenant directory with a case-insensitive unique slug."""
    op.create_table(
        "tenants",
        sa.Column("id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("name", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("slug", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column(
            "status", sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default="trial"
        ),
        sa.Column("trial_expires_at", sa.DateTime(), nullable=False),
        sa.Column("subscription_expires_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug"),
        sa.CheckConstraint("slug ~ '^[a-z0-9-]{3,50}$'", name="ck_tenants_slug_format"),
    )
    op.create_index("ux_tenants_slug_lower", "tenants", [sa.text("lower(slug)")], unique=True)
    op.create_index(op.f("ix_tenants_is_active"), "tenants", ["is_active"])
    op.create_index(op.f("ix_tenants_status"), "tenants", ["status"])
    op.create_index(op.f("ix_tenants_trial_expires_at"), "tenants", ["trial_expires_at"])


def downgrade() -> None:
    op.drop_index(op.f("ix_tenants_trial_expires_at"), table_name="tenants")
    op.drop_index(op.f("ix_tenants_status"), table_name="tenants")
    op.drop_index(op.f("ix_tenants_is_active"), table_name="tenants")
    op.drop_index("ux_tenants_slug_lower", table_name="tenants")
    op.drop_table("tenants")
