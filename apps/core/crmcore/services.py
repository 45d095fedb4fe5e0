"""Operations exposed to collaborators: API layer, schema tooling, delete handlers and schedulers."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy.orm import Session

from crmcore.fields.registry import field_registry
from crmcore.fields.schemas import FieldDefinitionRead
from crmcore.relationships.schemas import (
    CleanupResult,
    ReferencingRecord,
    RelatedRecord,
    RelationshipBatchResult,
    RelationshipHop,
    RelationshipValidationResult,
)
from crmcore.relationships.service import relationship_service
from crmcore.segments.schemas import CalculationResult, SegmentPreview, SegmentRule
from crmcore.segments.service import segment_service


def validate_relationship_target(
    session: Session,
    target_entity_type: str,
    record_id: Any,
    tenant_id: str,
) -> RelationshipValidationResult:
    return relationship_service.validate_target(session, target_entity_type, record_id, tenant_id)


def validate_relationships(
    session: Session,
    tenant_id: str,
    field_defs: list[FieldDefinitionRead],
    record_data: Mapping[str, Any],
) -> RelationshipBatchResult:
    return relationship_service.validate_all(session, tenant_id, field_defs, record_data)


def cleanup_orphaned_relationships(
    session: Session,
    tenant_id: str,
    deleted_entity_type: str,
    deleted_id: Any,
) -> CleanupResult:
    return relationship_service.cleanup(session, tenant_id, deleted_entity_type, deleted_id)


def resolve_relationship_path(
    session: Session,
    tenant_id: str,
    start_entity_type: str,
    start_id: str,
    hops: list[RelationshipHop] | list[dict[str, Any]],
) -> list[RelatedRecord]:
    return relationship_service.resolve_path(session, tenant_id, start_entity_type, start_id, hops)


def get_referencing_records(
    session: Session,
    tenant_id: str,
    target_entity_type: str,
    target_id: str,
) -> list[ReferencingRecord]:
    return relationship_service.get_referencing_records(session, tenant_id, target_entity_type, target_id)


def calculate_segment_members(session: Session, tenant_id: str, segment_id: Any) -> CalculationResult:
    return segment_service.calculate_segment_members(session, tenant_id, segment_id)


def preview_segment_members(
    session: Session,
    tenant_id: str,
    target_entity_type: str,
    rules: list[SegmentRule] | list[dict[str, Any]],
    logic: str = "AND",
    limit: int | None = None,
) -> SegmentPreview:
    return segment_service.preview_segment_members(session, tenant_id, target_entity_type, rules, logic, limit)


def invalidate_field_definitions(tenant_id: str, entity_type: str | None = None) -> int:
    return field_registry.invalidate(tenant_id, entity_type)
