"""create crm segments

Revision ID: 202610160003
Revises: 202610160002
Create Date: 2026-10-16 00:03:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610160003"
down_revision: str | None = "202610160002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_segment",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("segment_type", sa.String(length=16), nullable=False, server_default="DYNAMIC"),
        sa.Column("target_entity", sa.String(length=16), nullable=False),
        sa.Column("rules", sa.JSON(), nullable=False),
        sa.Column("rule_logic", sa.String(length=8), nullable=False, server_default="AND"),
        sa.Column("static_member_ids", sa.JSON(), nullable=False),
        sa.Column("member_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_calculated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_segment_tenant_type", "crm_segment", ["tenant_id", "segment_type"], unique=False)

    op.create_table(
        "crm_segment_member",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("segment_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["segment_id"], ["crm_segment.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("segment_id", "contact_id", name="uq_crm_segment_member_contact"),
        sa.UniqueConstraint("segment_id", "lead_id", name="uq_crm_segment_member_lead"),
        sa.CheckConstraint(
            "(contact_id IS NULL) <> (lead_id IS NULL)",
            name="ck_crm_segment_member_single_target",
        ),
    )
    op.create_index("ix_crm_segment_member_segment", "crm_segment_member", ["segment_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_crm_segment_member_segment", table_name="crm_segment_member")
    op.drop_table("crm_segment_member")
    op.drop_index("ix_crm_segment_tenant_type", table_name="crm_segment")
    op.drop_table("crm_segment")
