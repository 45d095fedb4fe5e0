"""create crm field definitions

Revision ID: 202610160002
Revises: 202610160001
Create Date: 2026-10-16 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610160002"
down_revision: str | None = "202610160001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_field_definition",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=True),
        sa.Column("custom_module_id", sa.Uuid(), nullable=True),
        sa.Column("field_key", sa.String(length=128), nullable=False),
        sa.Column("label", sa.Text(), nullable=False),
        sa.Column("data_type", sa.String(length=32), nullable=False),
        sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("allowed_values", sa.JSON(), nullable=True),
        sa.Column("related_module", sa.String(length=128), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["custom_module_id"], ["crm_custom_module.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "tenant_id",
            "entity_type",
            "custom_module_id",
            "field_key",
            name="uq_crm_field_definition_owner_key",
        ),
    )
    op.create_index(
        "ix_crm_field_definition_tenant_entity",
        "crm_field_definition",
        ["tenant_id", "entity_type"],
        unique=False,
    )
    op.create_index(
        "ix_crm_field_definition_tenant_related",
        "crm_field_definition",
        ["tenant_id", "data_type", "related_module"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_field_definition_tenant_related", table_name="crm_field_definition")
    op.drop_index("ix_crm_field_definition_tenant_entity", table_name="crm_field_definition")
    op.drop_table("crm_field_definition")
