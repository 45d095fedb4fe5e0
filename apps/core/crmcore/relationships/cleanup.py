from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crmcore import audit
from crmcore.errors import CoreError, TransactionError
from crmcore.events import publish
from crmcore.fields.registry import FieldDefinitionRegistry, field_registry
from crmcore.fields.schemas import FieldDefinitionRead
from crmcore.metrics import observe_relationship_cleanup
from crmcore.otel import get_tracer
from crmcore.records.entity_types import normalize_entity_type
from crmcore.records.models import utcnow
from crmcore.records.repository import EntityRepository, EntityRepositoryRegistry, entity_repositories, parse_record_id
from crmcore.relationships.lookup import owner_repository
from crmcore.relationships.schemas import CleanupResult, ReferencingRecord

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RelationshipCleanup:
    """Nulls relationship values that point at a deleted record.

    Every referencing field is scanned and nulled inside its own savepoint. A
    failing field is reported in ``CleanupResult.errors`` and rolled back alone;
    the remaining fields are still processed and committed together at the end.
    """

    registry: FieldDefinitionRegistry = field(default_factory=lambda: field_registry)
    repositories: EntityRepositoryRegistry = field(default_factory=lambda: entity_repositories)

    def cleanup(
        self,
        session: Session,
        tenant_id: str,
        deleted_entity_type: str,
        deleted_id: Any,
    ) -> CleanupResult:
        started = time.perf_counter()
        target_type = normalize_entity_type(deleted_entity_type)
        parsed_id = parse_record_id(deleted_id)
        target_id = str(parsed_id) if parsed_id is not None else str(deleted_id)

        tracer = get_tracer("crmcore.relationships")
        with tracer.start_as_current_span("relationships.cleanup") as span:
            span.set_attribute("tenant.id", tenant_id)
            span.set_attribute("relationships.entity_type", target_type)

            errors: list[str] = []
            references: list[ReferencingRecord] = []
            before_after: list[tuple[ReferencingRecord, dict[str, Any], dict[str, Any]]] = []

            try:
                definitions = self.registry.fields_referencing(session, tenant_id, target_type)
                for definition in definitions:
                    try:
                        # A failing field only rolls back its own savepoint.
                        with session.begin_nested():
                            changes = self._clean_field(session, tenant_id, definition, target_id)
                    except (CoreError, SQLAlchemyError) as exc:
                        errors.append(f"Failed to clean field {definition.field_key}: {exc}")
                        logger.warning(
                            "relationship_cleanup_field_failed",
                            extra={
                                "tenant_id": tenant_id,
                                "entity_type": definition.owner,
                                "field_key": definition.field_key,
                                "error": str(exc),
                            },
                        )
                        continue

                    for reference, before, after in changes:
                        references.append(reference)
                        before_after.append((reference, before, after))

                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                observe_relationship_cleanup("failed", 0)
                span.set_attribute("relationships.status", "failed")
                logger.exception(
                    "relationship_cleanup_failed",
                    extra={"tenant_id": tenant_id, "entity_type": target_type, "record_id": target_id},
                )
                raise TransactionError("Failed to clean up orphaned relationships") from exc

            for reference, before, after in before_after:
                audit.record(
                    tenant_id=tenant_id,
                    entity_type=reference.entity_type,
                    entity_id=reference.record_id,
                    action="relationship.cleaned",
                    before=before,
                    after=after,
                )

            result = CleanupResult(cleaned_count=len(references), errors=errors, references=references)
            status = "partial" if errors else "success"
            span.set_attribute("relationships.status", status)
            span.set_attribute("relationships.cleaned_count", result.cleaned_count)
            observe_relationship_cleanup(status, result.cleaned_count)

            if references:
                publish(
                    {
                        "event_id": str(uuid.uuid4()),
                        "event_type": "crm.relationships.cleaned",
                        "occurred_at": utcnow().isoformat(),
                        "tenant_id": tenant_id,
                        "payload": {
                            "deleted_entity_type": target_type,
                            "deleted_id": target_id,
                            "cleaned_count": result.cleaned_count,
                            "references": [reference.model_dump() for reference in references],
                        },
                    }
                )

            logger.info(
                "relationship_cleanup_completed",
                extra={
                    "tenant_id": tenant_id,
                    "entity_type": target_type,
                    "record_id": target_id,
                    "cleaned_count": result.cleaned_count,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
            return result

    def _clean_field(
        self,
        session: Session,
        tenant_id: str,
        definition: FieldDefinitionRead,
        target_id: str,
    ) -> list[tuple[ReferencingRecord, dict[str, Any], dict[str, Any]]]:
        repository = owner_repository(session, tenant_id, definition, self.repositories)
        rows = repository.find_by_reference(session, tenant_id, definition.field_key, target_id)
        return [self._null_reference(repository, row, definition.field_key) for row in rows]

    @staticmethod
    def _null_reference(
        repository: EntityRepository,
        row: Any,
        field_key: str,
    ) -> tuple[ReferencingRecord, dict[str, Any], dict[str, Any]]:
        bag = repository.read_attributes(row)
        before = {field_key: bag.value_of(field_key).to_raw()}
        repository.write_attributes(row, bag.with_null(field_key))
        reference = ReferencingRecord(entity_type=repository.entity_type, record_id=str(row.id), field_key=field_key)
        return reference, before, {field_key: None}


relationship_cleanup = RelationshipCleanup()
