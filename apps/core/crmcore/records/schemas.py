from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict


class EntityRecord(BaseModel):
    """Read model shared by every entity type, built-in or custom."""

    model_config = ConfigDict(frozen=True)

    entity_type: str
    id: str
    tenant_id: str
    display_name: str | None = None
    fields: dict[str, Any] = {}
    attributes: dict[str, Any] = {}
