"""create crm records

Revision ID: 202610160001
Revises:
Create Date: 2026-10-16 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "202610160001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

ATTRIBUTE_BAG = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "crm_account",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("industry", sa.Text(), nullable=True),
        sa.Column("account_type", sa.String(length=64), nullable=True),
        sa.Column("website", sa.Text(), nullable=True),
        sa.Column("custom_fields", ATTRIBUTE_BAG, nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_account_tenant", "crm_account", ["tenant_id"], unique=False)

    op.create_table(
        "crm_contact",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=True),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("department", sa.Text(), nullable=True),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("custom_fields", ATTRIBUTE_BAG, nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["crm_account.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_contact_tenant", "crm_contact", ["tenant_id"], unique=False)
    op.create_index("ix_crm_contact_account_id", "crm_contact", ["account_id"], unique=False)
    op.create_index("ix_crm_contact_email", "crm_contact", ["email"], unique=False)

    op.create_table(
        "crm_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("company", sa.Text(), nullable=True),
        sa.Column("source", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="NEW"),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("custom_fields", ATTRIBUTE_BAG, nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_lead_tenant_status", "crm_lead", ["tenant_id", "status"], unique=False)
    op.create_index("ix_crm_lead_email", "crm_lead", ["email"], unique=False)

    op.create_table(
        "crm_opportunity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("stage", sa.String(length=64), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("custom_fields", ATTRIBUTE_BAG, nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["crm_account.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_opportunity_tenant", "crm_opportunity", ["tenant_id"], unique=False)

    op.create_table(
        "crm_custom_module",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("slug", sa.String(length=128), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "slug", name="uq_crm_custom_module_slug"),
    )

    op.create_table(
        "crm_custom_module_record",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("module_id", sa.Uuid(), nullable=False),
        sa.Column("data", ATTRIBUTE_BAG, nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["module_id"], ["crm_custom_module.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_custom_module_record_tenant_module",
        "crm_custom_module_record",
        ["tenant_id", "module_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_custom_module_record_tenant_module", table_name="crm_custom_module_record")
    op.drop_table("crm_custom_module_record")
    op.drop_table("crm_custom_module")
    op.drop_index("ix_crm_opportunity_tenant", table_name="crm_opportunity")
    op.drop_table("crm_opportunity")
    op.drop_index("ix_crm_lead_email", table_name="crm_lead")
    op.drop_index("ix_crm_lead_tenant_status", table_name="crm_lead")
    op.drop_table("crm_lead")
    op.drop_index("ix_crm_contact_email", table_name="crm_contact")
    op.drop_index("ix_crm_contact_account_id", table_name="crm_contact")
    op.drop_index("ix_crm_contact_tenant", table_name="crm_contact")
    op.drop_table("crm_contact")
    op.drop_index("ix_crm_account_tenant", table_name="crm_account")
    op.drop_table("crm_account")
