from __future__ import annotations

import uuid
from collections.abc import Iterable
from typing import Any

from sqlalchemy import Select, cast, inspect, or_, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session

from crmcore.errors import EntityTypeNotFoundError
from crmcore.records.attributes import AttributeBag
from crmcore.records.entity_types import normalize_entity_type
from crmcore.records.models import (
    CRMAccount,
    CRMContact,
    CRMCustomModule,
    CRMCustomModuleRecord,
    CRMLead,
    CRMOpportunity,
)
from crmcore.records.schemas import EntityRecord

_EXCLUDED_FIELD_COLUMNS = {"id", "tenant_id", "custom_fields", "data", "module_id"}


def parse_record_id(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    if value is None:
        return None
    try:
        return uuid.UUID(str(value).strip())
    except ValueError:
        return None


def supports_json_path(session: Session) -> bool:
    return session.get_bind().dialect.name == "postgresql"


class EntityRepository:
    """Storage access for one entity type.

    Subclasses provide the mapped ``model``, the name of the attribute bag
    column and any extra scoping; everything else is shared.
    """

    entity_type: str
    model: type[Any]
    bag_attribute: str

    def _scoped(self, tenant_id: str) -> Select[Any]:
        return select(self.model).where(self.model.tenant_id == tenant_id)

    def get(self, session: Session, tenant_id: str, record_id: Any) -> Any | None:
        parsed = parse_record_id(record_id)
        if parsed is None:
            return None
        return session.scalar(self._scoped(tenant_id).where(self.model.id == parsed))

    def exists(self, session: Session, tenant_id: str, record_id: Any) -> bool:
        parsed = parse_record_id(record_id)
        if parsed is None:
            return False
        query = self._scoped(tenant_id).with_only_columns(self.model.id).where(self.model.id == parsed)
        return session.scalar(query.limit(1)) is not None

    def list_by_ids(self, session: Session, tenant_id: str, record_ids: Iterable[Any]) -> list[Any]:
        parsed = [value for value in (parse_record_id(item) for item in record_ids) if value is not None]
        if not parsed:
            return []
        rows = session.scalars(self._scoped(tenant_id).where(self.model.id.in_(parsed))).all()
        by_id = {row.id: row for row in rows}
        return [by_id[value] for value in dict.fromkeys(parsed) if value in by_id]

    def existing_ids(self, session: Session, tenant_id: str, record_ids: Iterable[Any]) -> set[uuid.UUID]:
        parsed = {value for value in (parse_record_id(item) for item in record_ids) if value is not None}
        if not parsed:
            return set()
        query = self._scoped(tenant_id).with_only_columns(self.model.id).where(self.model.id.in_(parsed))
        return set(session.scalars(query).all())

    def find_by_reference(self, session: Session, tenant_id: str, field_key: str, record_id: Any) -> list[Any]:
        """Return records whose bag references ``record_id`` under ``field_key``.

        Identifiers compare case-insensitively. PostgreSQL answers with jsonb
        containment on the canonical and upper-case spellings. Other backends
        load the tenant's records of this type and compare parsed identifiers.
        """

        parsed = parse_record_id(record_id)
        if parsed is None:
            return []

        bag_column = getattr(self.model, self.bag_attribute)
        query = self._scoped(tenant_id).order_by(self.model.id)
        if supports_json_path(session):
            canonical = str(parsed)
            containment = or_(
                cast(bag_column, JSONB).contains({field_key: canonical}),
                cast(bag_column, JSONB).contains({field_key: canonical.upper()}),
            )
            return list(session.scalars(query.where(containment)).all())

        return [
            row
            for row in session.scalars(query).all()
            if parse_record_id(self.read_attributes(row).text_of(field_key)) == parsed
        ]

    def read_attributes(self, row: Any) -> AttributeBag:
        return AttributeBag.from_raw(getattr(row, self.bag_attribute))

    def write_attributes(self, row: Any, bag: AttributeBag) -> None:
        setattr(row, self.bag_attribute, bag.to_raw())

    def display_name(self, row: Any) -> str | None:
        return None

    def to_record(self, row: Any) -> EntityRecord:
        fields: dict[str, Any] = {}
        for column in inspect(self.model).columns:
            if column.key in _EXCLUDED_FIELD_COLUMNS:
                continue
            fields[column.key] = getattr(row, column.key)
        return EntityRecord(
            entity_type=self.entity_type,
            id=str(row.id),
            tenant_id=row.tenant_id,
            display_name=self.display_name(row),
            fields=fields,
            attributes=self.read_attributes(row).to_raw(),
        )


class BuiltInEntityRepository(EntityRepository):
    bag_attribute = "custom_fields"

    def __init__(self, model: type[Any], entity_type: str) -> None:
        self.model = model
        self.entity_type = entity_type

    def display_name(self, row: Any) -> str | None:
        name = getattr(row, "name", None)
        if name:
            return name
        parts = [getattr(row, "first_name", None), getattr(row, "last_name", None)]
        joined = " ".join(part for part in parts if part)
        return joined or None


class CustomModuleRecordRepository(EntityRepository):
    model = CRMCustomModuleRecord
    bag_attribute = "data"

    def __init__(self, module: CRMCustomModule) -> None:
        self.module_id = module.id
        self.entity_type = module.slug

    def _scoped(self, tenant_id: str) -> Select[Any]:
        return super()._scoped(tenant_id).where(CRMCustomModuleRecord.module_id == self.module_id)

    def display_name(self, row: Any) -> str | None:
        bag = self.read_attributes(row)
        for key in ("name", "title"):
            text = bag.text_of(key)
            if text:
                return text
        return None


class EntityRepositoryRegistry:
    """Dispatch table from entity-type identifier to repository."""

    def __init__(self) -> None:
        self._built_in: dict[str, EntityRepository] = {
            "ACCOUNT": BuiltInEntityRepository(CRMAccount, "ACCOUNT"),
            "CONTACT": BuiltInEntityRepository(CRMContact, "CONTACT"),
            "LEAD": BuiltInEntityRepository(CRMLead, "LEAD"),
            "OPPORTUNITY": BuiltInEntityRepository(CRMOpportunity, "OPPORTUNITY"),
        }

    def built_in(self, entity_type: str) -> EntityRepository | None:
        return self._built_in.get(normalize_entity_type(entity_type))

    def find_module(self, session: Session, tenant_id: str, slug: str) -> CRMCustomModule | None:
        return session.scalar(
            select(CRMCustomModule).where(
                CRMCustomModule.tenant_id == tenant_id,
                CRMCustomModule.slug == slug.strip(),
            )
        )

    def resolve(self, session: Session, tenant_id: str, entity_type: str) -> EntityRepository:
        repository = self.built_in(entity_type)
        if repository is not None:
            return repository

        module = self.find_module(session, tenant_id, entity_type)
        if module is None:
            raise EntityTypeNotFoundError(entity_type)
        return CustomModuleRecordRepository(module)

    def resolve_module_id(self, session: Session, tenant_id: str, module_id: uuid.UUID) -> EntityRepository:
        module = session.scalar(
            select(CRMCustomModule).where(
                CRMCustomModule.tenant_id == tenant_id,
                CRMCustomModule.id == module_id,
            )
        )
        if module is None:
            raise EntityTypeNotFoundError(str(module_id))
        return CustomModuleRecordRepository(module)


entity_repositories = EntityRepositoryRegistry()
