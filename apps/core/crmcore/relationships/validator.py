from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crmcore.errors import EntityTypeNotFoundError, TransactionError, ValidationError
from crmcore.fields.registry import FieldDefinitionRegistry, field_registry
from crmcore.fields.schemas import FieldDefinitionRead
from crmcore.metrics import observe_relationship_validation_failure
from crmcore.records.attributes import coerce_attribute
from crmcore.records.entity_types import is_built_in, normalize_entity_type
from crmcore.records.repository import EntityRepositoryRegistry, entity_repositories
from crmcore.relationships.schemas import (
    RecordValidationResult,
    RelationshipBatchResult,
    RelationshipValidationResult,
)

logger = logging.getLogger(__name__)

RECORD_ID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def is_empty_reference(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() in {"", "null"}
    return False


def is_record_id(value: str) -> bool:
    return RECORD_ID_PATTERN.match(value.strip()) is not None


def _invalid(error: str, error_code: str) -> RelationshipValidationResult:
    observe_relationship_validation_failure(error_code)
    return RelationshipValidationResult(valid=False, error=error, error_code=error_code)


@dataclass(slots=True)
class RelationshipValidator:
    registry: FieldDefinitionRegistry = field(default_factory=lambda: field_registry)
    repositories: EntityRepositoryRegistry = field(default_factory=lambda: entity_repositories)

    def validate_target(
        self,
        session: Session,
        target_entity_type: str,
        raw_id: Any,
        tenant_id: str,
    ) -> RelationshipValidationResult:
        if is_empty_reference(raw_id):
            return RelationshipValidationResult(valid=True)

        candidate = str(raw_id).strip()
        if not is_record_id(candidate):
            return _invalid(f"Invalid ID format: {candidate}", "invalid_format")

        try:
            try:
                repository = self.repositories.resolve(session, tenant_id, target_entity_type)
            except EntityTypeNotFoundError:
                return _invalid(f"Custom module not found: {target_entity_type}", "module_not_found")

            if not repository.exists(session, tenant_id, candidate):
                if is_built_in(target_entity_type):
                    label = normalize_entity_type(target_entity_type)
                else:
                    label = "Custom module"
                return _invalid(f"{label} record not found: {candidate}", "not_found")
        except SQLAlchemyError as exc:
            logger.exception(
                "relationship_validation_failed",
                extra={"tenant_id": tenant_id, "entity_type": target_entity_type, "record_id": candidate},
            )
            raise TransactionError("Failed to validate relationship") from exc

        return RelationshipValidationResult(valid=True)

    def validate_all(
        self,
        session: Session,
        tenant_id: str,
        field_defs: list[FieldDefinitionRead],
        record_data: Mapping[str, Any],
    ) -> RelationshipBatchResult:
        errors: dict[str, str] = {}
        for definition in field_defs:
            if not definition.is_relationship:
                continue
            value = record_data.get(definition.field_key)
            if is_empty_reference(value):
                continue

            result = self.validate_target(session, definition.related_module or "", value, tenant_id)
            if not result.valid:
                errors[definition.field_key] = result.error or "Invalid relationship"

        return RelationshipBatchResult(valid=not errors, errors=errors)

    def validate_record_payload(
        self,
        session: Session,
        tenant_id: str,
        entity_type: str,
        data: Mapping[str, Any],
    ) -> RecordValidationResult:
        """Coerce a record's attribute payload and check its relationships.

        Shape errors (unknown keys, missing required values, wrong types) are
        reported first; relationship existence is only checked when the shape
        is valid.
        """

        definitions = self.registry.fields_of_type(session, tenant_id, entity_type)
        by_key = {definition.field_key: definition for definition in definitions}

        errors: dict[str, str] = {}
        attributes: dict[str, Any] = {}
        for key, raw in data.items():
            definition = by_key.get(key)
            if definition is None:
                errors[key] = f"Unknown field: {key}"
                continue
            try:
                attributes[key] = coerce_attribute(definition, raw).to_raw()
            except ValidationError as exc:
                errors[key] = str(exc)

        for definition in definitions:
            if definition.is_required and is_empty_reference(data.get(definition.field_key)):
                errors.setdefault(definition.field_key, f"{definition.field_key} is required")

        if errors:
            return RecordValidationResult(valid=False, errors=errors)

        relationship_result = self.validate_all(session, tenant_id, definitions, attributes)
        if not relationship_result.valid:
            return RecordValidationResult(valid=False, errors=relationship_result.errors)

        return RecordValidationResult(valid=True, attributes=attributes)


relationship_validator = RelationshipValidator()
