from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, get_args

from sqlalchemy import ColumnElement, String, and_, cast, false, or_, true
from sqlalchemy.orm import InstrumentedAttribute

from crmcore.errors import ValidationError
from crmcore.metrics import observe_rule_dropped
from crmcore.records.entity_types import normalize_entity_type
from crmcore.records.models import CRMAccount, CRMContact, CRMLead
from crmcore.segments.schemas import RULE_OPERATORS, RuleLogic, SegmentFieldOption, SegmentRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FieldAlias:
    """Where a rule field lives: a target column, or a column one relation away."""

    label: str
    column: InstrumentedAttribute[Any]
    via: InstrumentedAttribute[Any] | None = None


CONTACT_FIELDS: dict[str, FieldAlias] = {
    "email": FieldAlias("Email", CRMContact.email),
    "firstName": FieldAlias("First Name", CRMContact.first_name),
    "lastName": FieldAlias("Last Name", CRMContact.last_name),
    "phone": FieldAlias("Phone", CRMContact.phone),
    "title": FieldAlias("Job Title", CRMContact.title),
    "department": FieldAlias("Department", CRMContact.department),
    "company": FieldAlias("Company (Account Name)", CRMAccount.name, via=CRMContact.account),
    "industry": FieldAlias("Industry (Account)", CRMAccount.industry, via=CRMContact.account),
    "accountType": FieldAlias("Account Type", CRMAccount.account_type, via=CRMContact.account),
    "isPrimary": FieldAlias("Is Primary Contact", CRMContact.is_primary),
    "createdAt": FieldAlias("Created Date", CRMContact.created_at),
    "updatedAt": FieldAlias("Updated Date", CRMContact.updated_at),
}

LEAD_FIELDS: dict[str, FieldAlias] = {
    "email": FieldAlias("Email", CRMLead.email),
    "firstName": FieldAlias("First Name", CRMLead.first_name),
    "lastName": FieldAlias("Last Name", CRMLead.last_name),
    "phone": FieldAlias("Phone", CRMLead.phone),
    "title": FieldAlias("Job Title", CRMLead.title),
    "company": FieldAlias("Company", CRMLead.company),
    "source": FieldAlias("Lead Source", CRMLead.source),
    "status": FieldAlias("Status", CRMLead.status),
    "createdAt": FieldAlias("Created Date", CRMLead.created_at),
    "updatedAt": FieldAlias("Updated Date", CRMLead.updated_at),
    "convertedAt": FieldAlias("Converted Date", CRMLead.converted_at),
}

TARGET_MODELS: dict[str, type[Any]] = {"CONTACT": CRMContact, "LEAD": CRMLead}
_FIELD_MAPS: dict[str, dict[str, FieldAlias]] = {"CONTACT": CONTACT_FIELDS, "LEAD": LEAD_FIELDS}
_VALUE_OPERATORS = {"greater_than", "less_than"}
_TEXT_OPERATORS = {"contains", "not_contains", "starts_with", "ends_with"}


class RuleError(ValueError):
    def __init__(self, reason: str, message: str) -> None:
        self.reason = reason
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class DroppedRule:
    rule: SegmentRule
    reason: str
    message: str


@dataclass(slots=True)
class CompiledPredicate:
    target_entity: str
    model: type[Any]
    clause: ColumnElement[bool]
    applied: list[SegmentRule] = field(default_factory=list)
    dropped: list[DroppedRule] = field(default_factory=list)


def normalize_target_entity(target_entity: str) -> str:
    normalized = normalize_entity_type(target_entity)
    if normalized not in TARGET_MODELS:
        raise ValidationError(
            f"Unsupported segment target entity: {target_entity}",
            details=[{"field": "target_entity", "value": target_entity}],
        )
    return normalized


def normalize_rule_logic(logic: str | None) -> str:
    normalized = (logic or "").strip().upper()
    if normalized not in get_args(RuleLogic):
        raise ValidationError(
            f"Unsupported rule logic: {logic}",
            details=[{"field": "rule_logic", "value": logic}],
        )
    return normalized


def available_fields(target_entity: str) -> list[SegmentFieldOption]:
    fields = _FIELD_MAPS[normalize_target_entity(target_entity)]
    return [SegmentFieldOption(value=key, label=alias.label) for key, alias in fields.items()]


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _coerce_value(column: InstrumentedAttribute[Any], value: Any) -> Any:
    python_type = getattr(column.type, "python_type", None)
    if value is None or python_type is None:
        return value
    try:
        if python_type is bool:
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.lower() in {"true", "false"}:
                return value.lower() == "true"
            raise ValueError(f"invalid boolean: {value}")
        if python_type is datetime:
            if isinstance(value, datetime):
                parsed = value
            elif isinstance(value, date):
                parsed = datetime(value.year, value.month, value.day)
            else:
                parsed = datetime.fromisoformat(str(value))
            return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)
        if python_type is Decimal:
            return Decimal(str(value))
        if python_type is int:
            return int(value)
        if python_type is str:
            if isinstance(value, bool):
                return str(value).lower()
            return str(value)
    except (ValueError, InvalidOperation) as exc:
        raise RuleError("invalid_value", f"value {value!r} is not valid for {column.key}") from exc
    return value


def _is_text(column: InstrumentedAttribute[Any]) -> bool:
    return getattr(column.type, "python_type", None) is str


def _operator_condition(operator: str, column: InstrumentedAttribute[Any], value: Any) -> ColumnElement[bool]:
    if operator in _TEXT_OPERATORS:
        text = "" if value is None else str(value)
        target = column if _is_text(column) else cast(column, String)
        pattern = _escape_like(text)
        if operator == "contains":
            return target.ilike(f"%{pattern}%", escape="\\")
        if operator == "not_contains":
            return or_(~target.ilike(f"%{pattern}%", escape="\\"), column.is_(None))
        if operator == "starts_with":
            return target.ilike(f"{pattern}%", escape="\\")
        return target.ilike(f"%{pattern}", escape="\\")

    if operator == "is_empty":
        if _is_text(column):
            return or_(column.is_(None), column == "")
        return column.is_(None)
    if operator == "is_not_empty":
        if _is_text(column):
            return and_(column.is_not(None), column != "")
        return column.is_not(None)

    coerced = _coerce_value(column, value)
    if operator == "equals":
        return column.is_(None) if coerced is None else column == coerced
    if operator == "not_equals":
        return column.is_not(None) if coerced is None else or_(column != coerced, column.is_(None))
    if operator in _VALUE_OPERATORS:
        if coerced is None:
            raise RuleError("missing_value", f"{operator} requires a value")
        return column > coerced if operator == "greater_than" else column < coerced

    raise RuleError("unknown_operator", f"Unknown operator: {operator}")


def compile_rule(rule: SegmentRule, target_entity: str) -> ColumnElement[bool]:
    alias = _FIELD_MAPS[target_entity].get(rule.field)
    if alias is None:
        raise RuleError("unknown_field", f'Unknown field "{rule.field}" for entity {target_entity}')
    if rule.operator not in RULE_OPERATORS:
        raise RuleError("unknown_operator", f"Unknown operator: {rule.operator}")

    condition = _operator_condition(rule.operator, alias.column, rule.value)
    if alias.via is not None:
        return alias.via.has(condition)
    return condition


def _as_rules(rules: list[SegmentRule] | list[dict[str, Any]]) -> list[SegmentRule]:
    return [rule if isinstance(rule, SegmentRule) else SegmentRule.model_validate(rule) for rule in rules]


@dataclass(slots=True)
class RuleCompiler:
    """Turns ``(field, operator, value)`` rules into a tenant-scoped SQL predicate."""

    def compile(
        self,
        rules: list[SegmentRule] | list[dict[str, Any]],
        logic: str,
        target_entity: str,
        tenant_id: str,
    ) -> CompiledPredicate:
        target = normalize_target_entity(target_entity)
        model = TARGET_MODELS[target]
        rule_logic = normalize_rule_logic(logic)

        applied: list[SegmentRule] = []
        conditions: list[ColumnElement[bool]] = []
        dropped: list[DroppedRule] = []
        for rule in _as_rules(rules):
            try:
                conditions.append(compile_rule(rule, target))
                applied.append(rule)
            except RuleError as exc:
                dropped.append(DroppedRule(rule=rule, reason=exc.reason, message=str(exc)))
                observe_rule_dropped(exc.reason)
                logger.warning(
                    "segment_rule_dropped",
                    extra={
                        "tenant_id": tenant_id,
                        "entity_type": target,
                        "field_key": rule.field,
                        "operator": rule.operator,
                        "error": str(exc),
                    },
                )

        if not conditions:
            combined: ColumnElement[bool] = true()
        elif rule_logic == "OR":
            combined = or_(false(), *conditions)
        else:
            combined = and_(true(), *conditions)

        clause = and_(model.tenant_id == tenant_id, combined)
        return CompiledPredicate(target_entity=target, model=model, clause=clause, applied=applied, dropped=dropped)

    def validate_rules(self, rules: list[SegmentRule] | list[dict[str, Any]], target_entity: str) -> list[SegmentRule]:
        """Raise ``ValidationError`` listing every rule that would be dropped at evaluation time."""

        target = normalize_target_entity(target_entity)
        parsed = _as_rules(rules)
        details: list[dict[str, Any]] = []
        for index, rule in enumerate(parsed):
            try:
                compile_rule(rule, target)
            except RuleError as exc:
                details.append({"index": index, "field": rule.field, "operator": rule.operator, "reason": exc.reason, "message": str(exc)})
        if details:
            raise ValidationError("Segment rules are invalid", details=details)
        return parsed


rule_compiler = RuleCompiler()
