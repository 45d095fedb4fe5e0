from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from crmcore.fields.schemas import FieldDefinitionRead
from crmcore.relationships.cleanup import RelationshipCleanup, relationship_cleanup
from crmcore.relationships.schemas import (
    CleanupResult,
    RecordValidationResult,
    ReferencingRecord,
    RelatedRecord,
    RelationshipBatchResult,
    RelationshipHop,
    RelationshipValidationResult,
)
from crmcore.relationships.traversal import RelationshipTraversal, relationship_traversal
from crmcore.relationships.validator import RelationshipValidator, relationship_validator


@dataclass(slots=True)
class RelationshipService:
    validator: RelationshipValidator = field(default_factory=lambda: relationship_validator)
    cleanup_engine: RelationshipCleanup = field(default_factory=lambda: relationship_cleanup)
    traversal: RelationshipTraversal = field(default_factory=lambda: relationship_traversal)

    def validate_target(
        self, session: Session, target_entity_type: str, raw_id: Any, tenant_id: str
    ) -> RelationshipValidationResult:
        return self.validator.validate_target(session, target_entity_type, raw_id, tenant_id)

    def validate_all(
        self,
        session: Session,
        tenant_id: str,
        field_defs: list[FieldDefinitionRead],
        record_data: Mapping[str, Any],
    ) -> RelationshipBatchResult:
        return self.validator.validate_all(session, tenant_id, field_defs, record_data)

    def validate_record_payload(
        self, session: Session, tenant_id: str, entity_type: str, data: Mapping[str, Any]
    ) -> RecordValidationResult:
        return self.validator.validate_record_payload(session, tenant_id, entity_type, data)

    def cleanup(self, session: Session, tenant_id: str, deleted_entity_type: str, deleted_id: Any) -> CleanupResult:
        return self.cleanup_engine.cleanup(session, tenant_id, deleted_entity_type, deleted_id)

    def related_of(
        self,
        session: Session,
        tenant_id: str,
        entity_type: str,
        record_id: str,
        field_key: str,
        target_entity_type: str,
    ) -> list[RelatedRecord]:
        return self.traversal.related_of(session, tenant_id, entity_type, record_id, field_key, target_entity_type)

    def resolve_path(
        self,
        session: Session,
        tenant_id: str,
        start_entity_type: str,
        start_id: str,
        hops: list[RelationshipHop] | list[dict[str, Any]],
    ) -> list[RelatedRecord]:
        return self.traversal.resolve_path(session, tenant_id, start_entity_type, start_id, hops)

    def get_referencing_records(
        self, session: Session, tenant_id: str, target_entity_type: str, target_id: str
    ) -> list[ReferencingRecord]:
        return self.traversal.get_referencing_records(session, tenant_id, target_entity_type, target_id)


relationship_service = RelationshipService()
