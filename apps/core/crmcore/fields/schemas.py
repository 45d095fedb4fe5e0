from __future__ import annotations

from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict

FieldDataType = Literal["text", "number", "bool", "date", "select", "multiselect", "relationship"]


class FieldDefinitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    tenant_id: str
    owner: str
    entity_type: str | None = None
    custom_module_id: UUID | None = None
    field_key: str
    label: str
    data_type: FieldDataType
    is_required: bool = False
    allowed_values: list[str] | None = None
    related_module: str | None = None
    is_active: bool = True
    display_order: int = 0
    version: int = 1

    @property
    def is_relationship(self) -> bool:
        return self.data_type == "relationship" and bool(self.related_module)
