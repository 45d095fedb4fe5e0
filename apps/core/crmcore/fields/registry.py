from __future__ import annotations

import logging
from collections.abc import Hashable
from dataclasses import dataclass, field

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from crmcore.core.config import get_settings
from crmcore.fields.cache import TTLCache
from crmcore.fields.models import CRMFieldDefinition
from crmcore.fields.schemas import FieldDefinitionRead
from crmcore.metrics import observe_field_registry_cache_hit, observe_field_registry_cache_miss
from crmcore.records.entity_types import is_built_in, normalize_entity_type
from crmcore.records.models import CRMCustomModule

logger = logging.getLogger(__name__)

_OWN = "fields_of_type"
_REVERSE = "fields_referencing"


def _default_cache() -> TTLCache:
    return TTLCache(get_settings().field_definition_cache_ttl_seconds)


@dataclass(slots=True)
class FieldDefinitionRegistry:
    """Read-through cache of field definitions per tenant.

    Entries are keyed ``(kind, tenant_id, entity_type)`` where ``kind`` is the
    forward lookup or the reverse relationship index.
    """

    cache: TTLCache = field(default_factory=_default_cache)

    def fields_of_type(self, session: Session, tenant_id: str, entity_type: str) -> list[FieldDefinitionRead]:
        normalized = normalize_entity_type(entity_type)
        key = (_OWN, tenant_id, normalized)
        cached = self.cache.get(key)
        if cached is not None:
            observe_field_registry_cache_hit()
            return list(cached)

        observe_field_registry_cache_miss()
        definitions = [
            definition
            for definition in self._load_active(session, tenant_id)
            if definition.owner == normalized
        ]
        self.cache.set(key, tuple(definitions))
        return definitions

    def fields_referencing(self, session: Session, tenant_id: str, target_entity_type: str) -> list[FieldDefinitionRead]:
        normalized = normalize_entity_type(target_entity_type)
        key = (_REVERSE, tenant_id, normalized)
        cached = self.cache.get(key)
        if cached is not None:
            observe_field_registry_cache_hit()
            return list(cached)

        observe_field_registry_cache_miss()
        query = select(CRMFieldDefinition, CRMCustomModule.slug).where(
            CRMFieldDefinition.data_type == "relationship",
            CRMFieldDefinition.related_module.is_not(None),
        )
        definitions = [
            definition
            for definition in self._load_active(session, tenant_id, query)
            if normalize_entity_type(definition.related_module or "") == normalized
        ]
        self.cache.set(key, tuple(definitions))
        return definitions

    def invalidate(self, tenant_id: str, entity_type: str | None = None) -> int:
        """Drop cached definitions after a schema change.

        Reverse-index entries of the tenant are always dropped because any of
        them may include a field of the mutated type.
        """

        if entity_type is None:
            removed = self.cache.invalidate_where(lambda key: _tenant_of(key) == tenant_id)
        else:
            normalized = normalize_entity_type(entity_type)

            def matches(key: Hashable) -> bool:
                if _tenant_of(key) != tenant_id:
                    return False
                kind = key[0]  # type: ignore[index]
                return kind == _REVERSE or key == (_OWN, tenant_id, normalized)

            removed = self.cache.invalidate_where(matches)

        logger.info(
            "field_registry_invalidated",
            extra={"tenant_id": tenant_id, "entity_type": entity_type},
        )
        return removed

    def _load_active(
        self,
        session: Session,
        tenant_id: str,
        query: Select | None = None,
    ) -> list[FieldDefinitionRead]:
        base = query if query is not None else select(CRMFieldDefinition, CRMCustomModule.slug)
        rows = session.execute(
            base.outerjoin(CRMCustomModule, CRMCustomModule.id == CRMFieldDefinition.custom_module_id)
            .where(
                CRMFieldDefinition.tenant_id == tenant_id,
                CRMFieldDefinition.is_active.is_(True),
            )
            .order_by(CRMFieldDefinition.display_order, CRMFieldDefinition.field_key)
        ).all()

        definitions: list[FieldDefinitionRead] = []
        for definition, module_slug in rows:
            owner = module_slug if definition.custom_module_id is not None else definition.entity_type
            if not owner:
                continue
            definitions.append(self._to_read(definition, owner))
        return definitions

    @staticmethod
    def _to_read(definition: CRMFieldDefinition, owner: str) -> FieldDefinitionRead:
        entity_type = normalize_entity_type(definition.entity_type) if definition.entity_type else None
        return FieldDefinitionRead(
            id=definition.id,
            tenant_id=definition.tenant_id,
            owner=normalize_entity_type(owner) if is_built_in(owner) else owner,
            entity_type=entity_type,
            custom_module_id=definition.custom_module_id,
            field_key=definition.field_key,
            label=definition.label,
            data_type=definition.data_type,
            is_required=definition.is_required,
            allowed_values=definition.allowed_values,
            related_module=definition.related_module,
            is_active=definition.is_active,
            display_order=definition.display_order,
            version=definition.version,
        )


def _tenant_of(key: Hashable) -> str | None:
    if isinstance(key, tuple) and len(key) == 3:
        return key[1]
    return None


field_registry = FieldDefinitionRegistry()
