from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from crmcore.records.schemas import EntityRecord

RelationshipErrorCode = Literal["invalid_format", "module_not_found", "not_found"]

RelatedRecord = EntityRecord


class RelationshipValidationResult(BaseModel):
    valid: bool
    error: str | None = None
    error_code: RelationshipErrorCode | None = None


class RelationshipBatchResult(BaseModel):
    valid: bool
    errors: dict[str, str] = Field(default_factory=dict)


class RecordValidationResult(BaseModel):
    valid: bool
    errors: dict[str, str] = Field(default_factory=dict)
    attributes: dict[str, Any] = Field(default_factory=dict)


class ReferencingRecord(BaseModel):
    entity_type: str
    record_id: str
    field_key: str


class CleanupResult(BaseModel):
    cleaned_count: int = 0
    errors: list[str] = Field(default_factory=list)
    references: list[ReferencingRecord] = Field(default_factory=list)


class RelationshipHop(BaseModel):
    field_key: str = Field(min_length=1)
    target_entity_type: str = Field(min_length=1)
