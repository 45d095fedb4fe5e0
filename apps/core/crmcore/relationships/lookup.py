"""Storage primitives shared by cleanup, reverse lookup and path traversal."""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from typing import Any

from sqlalchemy.orm import Session

from crmcore.fields.schemas import FieldDefinitionRead
from crmcore.records.repository import EntityRepository, EntityRepositoryRegistry
from crmcore.relationships.validator import is_empty_reference, is_record_id


def owner_repository(
    session: Session,
    tenant_id: str,
    definition: FieldDefinitionRead,
    repositories: EntityRepositoryRegistry,
) -> EntityRepository:
    if definition.custom_module_id is not None:
        return repositories.resolve_module_id(session, tenant_id, definition.custom_module_id)
    return repositories.resolve(session, tenant_id, definition.owner)


def scan_references(
    session: Session,
    tenant_id: str,
    definitions: list[FieldDefinitionRead],
    target_id: str,
    repositories: EntityRepositoryRegistry,
) -> Iterator[tuple[FieldDefinitionRead, EntityRepository, list[Any]]]:
    """Yield, per referencing field, the owner repository and the matching rows."""

    for definition in definitions:
        repository = owner_repository(session, tenant_id, definition, repositories)
        rows = repository.find_by_reference(session, tenant_id, definition.field_key, target_id)
        yield definition, repository, rows


def reference_of(repository: EntityRepository, row: Any, field_key: str) -> str | None:
    """Read a single relationship value from ``row``; malformed values read as absent."""

    value = repository.read_attributes(row).text_of(field_key)
    if is_empty_reference(value) or not is_record_id(value or ""):
        return None
    return str(uuid.UUID(value))


def follow_hop(
    session: Session,
    tenant_id: str,
    source: EntityRepository,
    source_ids: list[str],
    field_key: str,
    target: EntityRepository,
) -> list[Any]:
    candidates: dict[str, None] = {}
    for row in source.list_by_ids(session, tenant_id, source_ids):
        reference = reference_of(source, row, field_key)
        if reference is not None:
            candidates[reference] = None
    if not candidates:
        return []
    return target.list_by_ids(session, tenant_id, list(candidates))
