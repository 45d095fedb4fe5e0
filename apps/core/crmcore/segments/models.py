from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from crmcore.core.database import Base
from crmcore.records.models import utcnow


class CRMSegment(Base):
    __tablename__ = "crm_segment"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    segment_type: Mapped[str] = mapped_column(String(16), nullable=False, default="DYNAMIC", server_default="DYNAMIC")
    target_entity: Mapped[str] = mapped_column(String(16), nullable=False)
    rules: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    rule_logic: Mapped[str] = mapped_column(String(8), nullable=False, default="AND", server_default="AND")
    static_member_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    member_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_calculated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    members: Mapped[list[CRMSegmentMember]] = relationship(
        "CRMSegmentMember",
        back_populates="segment",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class CRMSegmentMember(Base):
    __tablename__ = "crm_segment_member"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    segment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_segment.id", ondelete="CASCADE"),
        nullable=False,
    )
    contact_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    lead_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    segment: Mapped[CRMSegment] = relationship("CRMSegment", back_populates="members")

    __table_args__ = (
        UniqueConstraint("segment_id", "contact_id", name="uq_crm_segment_member_contact"),
        UniqueConstraint("segment_id", "lead_id", name="uq_crm_segment_member_lead"),
        CheckConstraint(
            "(contact_id IS NULL) <> (lead_id IS NULL)",
            name="ck_crm_segment_member_single_target",
        ),
    )


Index("ix_crm_segment_tenant_type", CRMSegment.tenant_id, CRMSegment.segment_type)
Index("ix_crm_segment_member_segment", CRMSegmentMember.segment_id)
