from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from crmcore import audit
from crmcore.core.config import get_settings
from crmcore.errors import SegmentNotFoundError, TransactionError, ValidationError
from crmcore.events import publish
from crmcore.metrics import observe_membership_changes, observe_segment_recalculation
from crmcore.otel import get_tracer
from crmcore.records.models import utcnow
from crmcore.records.repository import EntityRepositoryRegistry, entity_repositories, parse_record_id
from crmcore.segments import compiler as segment_compiler
from crmcore.segments.compiler import RuleCompiler, normalize_target_entity, rule_compiler
from crmcore.segments.locks import SegmentLockRegistry, segment_locks
from crmcore.segments.models import CRMSegment, CRMSegmentMember
from crmcore.segments.schemas import (
    CalculationResult,
    SegmentCreate,
    SegmentFieldOption,
    SegmentMemberRead,
    SegmentPreview,
    SegmentPreviewItem,
    SegmentRead,
    SegmentRule,
)

logger = logging.getLogger(__name__)


def _display_name(row: Any) -> str:
    return f"{row.first_name} {row.last_name}".strip()


@dataclass(slots=True)
class SegmentService:
    compiler: RuleCompiler = field(default_factory=lambda: rule_compiler)
    locks: SegmentLockRegistry = field(default_factory=lambda: segment_locks)
    repositories: EntityRepositoryRegistry = field(default_factory=lambda: entity_repositories)

    def create_segment(self, session: Session, tenant_id: str, dto: SegmentCreate) -> SegmentRead:
        target = normalize_target_entity(dto.target_entity)
        rules = self.compiler.validate_rules(dto.rules, target) if dto.segment_type == "DYNAMIC" else []

        static_ids: list[str] = []
        if dto.segment_type == "STATIC":
            malformed = [value for value in dto.static_member_ids if parse_record_id(value) is None]
            if malformed:
                raise ValidationError(
                    "Static member ids are malformed",
                    details=[{"field": "static_member_ids", "value": value} for value in malformed],
                )
            static_ids = [str(parse_record_id(value)) for value in dict.fromkeys(dto.static_member_ids)]

        segment = CRMSegment(
            tenant_id=tenant_id,
            name=dto.name,
            description=dto.description,
            segment_type=dto.segment_type,
            target_entity=target,
            rules=[rule.model_dump() for rule in rules],
            rule_logic=dto.rule_logic,
            static_member_ids=static_ids,
        )
        session.add(segment)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise TransactionError("Failed to create segment") from exc
        session.refresh(segment)

        audit.record(
            tenant_id=tenant_id,
            entity_type="marketing.segment",
            entity_id=str(segment.id),
            action="create",
            before=None,
            after={"name": segment.name, "segment_type": segment.segment_type, "target_entity": target},
        )
        return SegmentRead.model_validate(segment)

    def get_segment(self, session: Session, tenant_id: str, segment_id: Any) -> SegmentRead:
        return SegmentRead.model_validate(self._load_segment(session, tenant_id, segment_id))

    def list_segment_members(
        self,
        session: Session,
        tenant_id: str,
        segment_id: Any,
        limit: int = 100,
    ) -> list[SegmentMemberRead]:
        segment = self._load_segment(session, tenant_id, segment_id)
        model = segment_compiler.TARGET_MODELS[segment.target_entity]
        member_column = self._member_column(segment.target_entity)
        rows = session.execute(
            select(model, CRMSegmentMember.added_at)
            .join(CRMSegmentMember, member_column == model.id)
            .where(CRMSegmentMember.segment_id == segment.id, model.tenant_id == tenant_id)
            .order_by(CRMSegmentMember.added_at.desc(), model.id)
            .limit(max(limit, 1))
        ).all()
        return [
            SegmentMemberRead(id=str(row.id), name=_display_name(row), email=row.email, added_at=added_at)
            for row, added_at in rows
        ]

    def available_fields(self, target_entity: str) -> list[SegmentFieldOption]:
        return segment_compiler.available_fields(target_entity)

    def calculate_segment_members(self, session: Session, tenant_id: str, segment_id: Any) -> CalculationResult:
        parsed_id = parse_record_id(segment_id)
        if parsed_id is None:
            raise SegmentNotFoundError(str(segment_id))

        settings = get_settings()
        with self.locks.hold(tenant_id, str(parsed_id), timeout=settings.segment_lock_timeout_seconds):
            return self._recalculate(session, tenant_id, parsed_id)

    def preview_segment_members(
        self,
        session: Session,
        tenant_id: str,
        target_entity: str,
        rules: list[SegmentRule] | list[dict[str, Any]],
        logic: str = "AND",
        limit: int | None = None,
    ) -> SegmentPreview:
        settings = get_settings()
        requested = settings.segment_preview_default_limit if limit is None else limit
        capped = max(0, min(requested, settings.segment_preview_max_limit))

        tracer = get_tracer("crmcore.segments")
        with tracer.start_as_current_span("segments.preview") as span:
            span.set_attribute("tenant.id", tenant_id)
            compiled = self.compiler.compile(rules, logic, target_entity, tenant_id)
            model = compiled.model
            count = session.scalar(select(func.count()).select_from(model).where(compiled.clause)) or 0
            rows: list[Any] = []
            if capped:
                rows = list(
                    session.scalars(
                        select(model).where(compiled.clause).order_by(model.created_at, model.id).limit(capped)
                    ).all()
                )
            span.set_attribute("segments.match_count", count)
            span.set_attribute("segments.rules_dropped", len(compiled.dropped))

        return SegmentPreview(
            count=count,
            sample=[SegmentPreviewItem(id=str(row.id), name=_display_name(row), email=row.email) for row in rows],
        )

    def _recalculate(self, session: Session, tenant_id: str, segment_id: uuid.UUID) -> CalculationResult:
        started = time.perf_counter()
        tracer = get_tracer("crmcore.segments")
        with tracer.start_as_current_span("segments.recalculate") as span:
            span.set_attribute("tenant.id", tenant_id)
            span.set_attribute("segments.id", str(segment_id))
            segment_type = "unknown"
            try:
                segment = session.scalar(
                    select(CRMSegment)
                    .where(CRMSegment.id == segment_id, CRMSegment.tenant_id == tenant_id)
                    .with_for_update()
                )
                if segment is None:
                    session.rollback()
                    raise SegmentNotFoundError(str(segment_id))

                segment_type = segment.segment_type
                target = normalize_target_entity(segment.target_entity)
                matches = self._matching_ids(session, tenant_id, segment, target)

                member_column = self._member_column(target)
                current = set(
                    session.scalars(
                        select(member_column).where(
                            CRMSegmentMember.segment_id == segment.id,
                            member_column.is_not(None),
                        )
                    ).all()
                )
                to_add = matches - current
                to_remove = current - matches

                if to_remove:
                    session.execute(
                        delete(CRMSegmentMember).where(
                            CRMSegmentMember.segment_id == segment.id,
                            member_column.in_(to_remove),
                        )
                    )
                if to_add:
                    attribute = "contact_id" if target == "CONTACT" else "lead_id"
                    session.add_all(
                        [CRMSegmentMember(segment_id=segment.id, **{attribute: record_id}) for record_id in sorted(to_add)]
                    )

                calculated_at = utcnow()
                segment.member_count = len(matches)
                segment.last_calculated_at = calculated_at
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                observe_segment_recalculation(segment_type, "failed", time.perf_counter() - started)
                logger.exception(
                    "segment_recalculation_failed",
                    extra={"tenant_id": tenant_id, "segment_id": str(segment_id)},
                )
                raise TransactionError("Failed to apply segment membership changes") from exc

            span.set_attribute("segments.member_count", len(matches))
            span.set_attribute("segments.added", len(to_add))
            span.set_attribute("segments.removed", len(to_remove))

        duration = time.perf_counter() - started
        observe_segment_recalculation(segment_type, "success", duration)
        observe_membership_changes(len(to_add), len(to_remove))

        result = CalculationResult(
            member_count=len(matches),
            added=len(to_add),
            removed=len(to_remove),
            calculated_at=calculated_at,
        )
        publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "marketing.segment.recalculated",
                "occurred_at": calculated_at.isoformat(),
                "tenant_id": tenant_id,
                "payload": {
                    "segment_id": str(segment_id),
                    "member_count": result.member_count,
                    "added": result.added,
                    "removed": result.removed,
                },
            }
        )
        logger.info(
            "segment_recalculated",
            extra={
                "tenant_id": tenant_id,
                "segment_id": str(segment_id),
                "member_count": result.member_count,
                "added": result.added,
                "removed": result.removed,
                "duration_ms": round(duration * 1000, 2),
            },
        )
        return result

    def _matching_ids(self, session: Session, tenant_id: str, segment: CRMSegment, target: str) -> set[uuid.UUID]:
        if segment.segment_type == "STATIC":
            repository = self.repositories.resolve(session, tenant_id, target)
            return repository.existing_ids(session, tenant_id, segment.static_member_ids or [])

        compiled = self.compiler.compile(segment.rules or [], segment.rule_logic, target, tenant_id)
        model = compiled.model
        return set(session.scalars(select(model.id).where(compiled.clause)).all())

    @staticmethod
    def _member_column(target: str) -> Any:
        return CRMSegmentMember.contact_id if target == "CONTACT" else CRMSegmentMember.lead_id

    @staticmethod
    def _load_segment(session: Session, tenant_id: str, segment_id: Any) -> CRMSegment:
        parsed_id = parse_record_id(segment_id)
        segment = None
        if parsed_id is not None:
            segment = session.scalar(
                select(CRMSegment).where(CRMSegment.id == parsed_id, CRMSegment.tenant_id == tenant_id)
            )
        if segment is None:
            raise SegmentNotFoundError(str(segment_id))
        return segment


segment_service = SegmentService()
