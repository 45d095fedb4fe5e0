from __future__ import annotations

from typing import Any


class CoreError(Exception):
    """Base error for relationship integrity and segmentation failures."""

    code = "core_error"


class ValidationError(CoreError):
    """Raised when an input (identifier, rule, attribute payload) is malformed."""

    code = "validation_error"

    def __init__(self, message: str, details: list[dict[str, Any]] | None = None) -> None:
        self.details = details or []
        super().__init__(message)


class NotFoundError(CoreError):
    code = "not_found"

    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class EntityTypeNotFoundError(NotFoundError):
    code = "entity_type_not_found"

    def __init__(self, entity_type: str) -> None:
        super().__init__("entity type", entity_type)


class SegmentNotFoundError(NotFoundError):
    code = "segment_not_found"

    def __init__(self, segment_id: str) -> None:
        super().__init__("segment", segment_id)


class ConcurrencyConflictError(CoreError):
    """Raised when a segment recalculation cannot obtain its lock in time."""

    code = "concurrency_conflict"


class TransactionError(CoreError):
    """Raised after rollback when the persistence layer rejects a unit of work."""

    code = "transaction_error"
