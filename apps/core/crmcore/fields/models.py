from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from crmcore.core.database import Base
from crmcore.records.models import utcnow


class CRMFieldDefinition(Base):
    __tablename__ = "crm_field_definition"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    custom_module_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_custom_module.id", ondelete="CASCADE"),
        nullable=True,
    )
    field_key: Mapped[str] = mapped_column(String(128), nullable=False)
    label: Mapped[str] = mapped_column(Text, nullable=False)
    data_type: Mapped[str] = mapped_column(String(32), nullable=False)
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    allowed_values: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    related_module: Mapped[str | None] = mapped_column(String(128), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "entity_type",
            "custom_module_id",
            "field_key",
            name="uq_crm_field_definition_owner_key",
        ),
    )


Index("ix_crm_field_definition_tenant_entity", CRMFieldDefinition.tenant_id, CRMFieldDefinition.entity_type)
Index(
    "ix_crm_field_definition_tenant_related",
    CRMFieldDefinition.tenant_id,
    CRMFieldDefinition.data_type,
    CRMFieldDefinition.related_module,
)
