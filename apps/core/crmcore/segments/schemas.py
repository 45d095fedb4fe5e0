from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

SegmentType = Literal["STATIC", "DYNAMIC"]
TargetEntity = Literal["CONTACT", "LEAD"]
RuleLogic = Literal["AND", "OR"]

RULE_OPERATORS = (
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "greater_than",
    "less_than",
    "is_empty",
    "is_not_empty",
)


class SegmentRule(BaseModel):
    field: str
    operator: str
    value: str | int | float | bool | None = None


class SegmentCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    segment_type: SegmentType = "DYNAMIC"
    target_entity: TargetEntity
    rules: list[SegmentRule] = Field(default_factory=list)
    rule_logic: RuleLogic = "AND"
    static_member_ids: list[str] = Field(default_factory=list)


class SegmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    description: str | None
    segment_type: SegmentType
    target_entity: TargetEntity
    rules: list[SegmentRule]
    rule_logic: RuleLogic
    static_member_ids: list[str]
    member_count: int
    last_calculated_at: datetime | None
    created_at: datetime
    updated_at: datetime


class SegmentMemberRead(BaseModel):
    id: str
    name: str
    email: str | None
    added_at: datetime


class CalculationResult(BaseModel):
    member_count: int
    added: int
    removed: int
    calculated_at: datetime


class SegmentPreviewItem(BaseModel):
    id: str
    name: str
    email: str | None


class SegmentPreview(BaseModel):
    count: int
    sample: list[SegmentPreviewItem] = Field(default_factory=list)


class SegmentFieldOption(BaseModel):
    value: str
    label: str
