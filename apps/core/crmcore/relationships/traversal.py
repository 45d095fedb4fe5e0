from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from crmcore.errors import EntityTypeNotFoundError
from crmcore.fields.registry import FieldDefinitionRegistry, field_registry
from crmcore.otel import get_tracer
from crmcore.records.repository import EntityRepositoryRegistry, entity_repositories
from crmcore.relationships.lookup import follow_hop, scan_references
from crmcore.relationships.schemas import ReferencingRecord, RelatedRecord, RelationshipHop

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RelationshipTraversal:
    registry: FieldDefinitionRegistry = field(default_factory=lambda: field_registry)
    repositories: EntityRepositoryRegistry = field(default_factory=lambda: entity_repositories)

    def related_of(
        self,
        session: Session,
        tenant_id: str,
        entity_type: str,
        record_id: str,
        field_key: str,
        target_entity_type: str,
    ) -> list[RelatedRecord]:
        return self.resolve_path(
            session,
            tenant_id,
            entity_type,
            record_id,
            [RelationshipHop(field_key=field_key, target_entity_type=target_entity_type)],
        )

    def resolve_path(
        self,
        session: Session,
        tenant_id: str,
        start_entity_type: str,
        start_id: str,
        hops: list[RelationshipHop] | list[dict[str, Any]],
    ) -> list[RelatedRecord]:
        """Follow ``hops`` left to right from one record.

        Each hop reads a single identifier per source record. Candidate ids are
        deduplicated in first-seen order and traversal stops as soon as a hop
        yields nothing.
        """

        if not hops:
            return []
        steps = [hop if isinstance(hop, RelationshipHop) else RelationshipHop.model_validate(hop) for hop in hops]

        tracer = get_tracer("crmcore.relationships")
        with tracer.start_as_current_span("relationships.resolve_path") as span:
            span.set_attribute("tenant.id", tenant_id)
            span.set_attribute("relationships.hops", len(steps))
            try:
                source = self.repositories.resolve(session, tenant_id, start_entity_type)
                candidate_ids = [str(start_id)]
                rows: list[Any] = []
                for step in steps:
                    target = self.repositories.resolve(session, tenant_id, step.target_entity_type)
                    rows = follow_hop(session, tenant_id, source, candidate_ids, step.field_key, target)
                    if not rows:
                        span.set_attribute("relationships.result_count", 0)
                        return []
                    candidate_ids = [str(row.id) for row in rows]
                    source = target
            except EntityTypeNotFoundError as exc:
                logger.warning(
                    "relationship_path_unknown_entity_type",
                    extra={"tenant_id": tenant_id, "entity_type": exc.entity_id},
                )
                return []

            span.set_attribute("relationships.result_count", len(rows))
            return [source.to_record(row) for row in rows]

    def get_referencing_records(
        self,
        session: Session,
        tenant_id: str,
        target_entity_type: str,
        target_id: str,
    ) -> list[ReferencingRecord]:
        definitions = self.registry.fields_referencing(session, tenant_id, target_entity_type)
        references: list[ReferencingRecord] = []
        for definition, repository, rows in scan_references(
            session, tenant_id, definitions, str(target_id), self.repositories
        ):
            references.extend(
                ReferencingRecord(entity_type=repository.entity_type, record_id=str(row.id), field_key=definition.field_key)
                for row in rows
            )
        return references


relationship_traversal = RelationshipTraversal()
