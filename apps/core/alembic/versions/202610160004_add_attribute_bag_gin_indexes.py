"""add attribute bag gin indexes

Revision ID: 202610160004
Revises: 202610160003
Create Date: 2026-10-16 00:04:00
"""

from collections.abc import Sequence

from alembic import op


revision: str = "202610160004"
down_revision: str | None = "202610160003"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

_BAGS = (
    ("ix_crm_account_custom_fields_gin", "crm_account", "custom_fields"),
    ("ix_crm_contact_custom_fields_gin", "crm_contact", "custom_fields"),
    ("ix_crm_lead_custom_fields_gin", "crm_lead", "custom_fields"),
    ("ix_crm_opportunity_custom_fields_gin", "crm_opportunity", "custom_fields"),
    ("ix_crm_custom_module_record_data_gin", "crm_custom_module_record", "data"),
)


def upgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    for index_name, table_name, column_name in _BAGS:
        op.create_index(
            index_name,
            table_name,
            [column_name],
            unique=False,
            postgresql_using="gin",
            postgresql_ops={column_name: "jsonb_path_ops"},
        )


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    for index_name, table_name, _ in reversed(_BAGS):
        op.drop_index(index_name, table_name=table_name)
