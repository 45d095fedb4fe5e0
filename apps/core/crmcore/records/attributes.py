"""Typed view over schemaless attribute bags.

Built-in records keep tenant-defined attributes in ``custom_fields`` and custom
module records keep everything in ``data``. Both are raw JSON objects in
storage; this module wraps them in an ordered mapping of tagged values so that
reads and writes go through one place and coercion against a field definition
happens at the registry boundary instead of ad hoc.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from crmcore.errors import ValidationError

if TYPE_CHECKING:
    from crmcore.fields.schemas import FieldDefinitionRead


class ValueKind(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    BOOL = "bool"
    DATE = "date"
    LIST = "list"
    NULL = "null"


@dataclass(frozen=True, slots=True)
class AttributeValue:
    kind: ValueKind
    value: Any = None

    @classmethod
    def null(cls) -> AttributeValue:
        return cls(ValueKind.NULL, None)

    @classmethod
    def text(cls, value: str) -> AttributeValue:
        return cls(ValueKind.TEXT, value)

    @classmethod
    def number(cls, value: int | float | Decimal) -> AttributeValue:
        return cls(ValueKind.NUMBER, Decimal(str(value)))

    @classmethod
    def boolean(cls, value: bool) -> AttributeValue:
        return cls(ValueKind.BOOL, value)

    @classmethod
    def date_value(cls, value: date) -> AttributeValue:
        if isinstance(value, datetime):
            value = value.date()
        return cls(ValueKind.DATE, value)

    @classmethod
    def list_value(cls, items: list[AttributeValue]) -> AttributeValue:
        return cls(ValueKind.LIST, tuple(items))

    @classmethod
    def from_raw(cls, raw: Any) -> AttributeValue:
        """Infer a tagged value from a JSON-decoded bag entry.

        Dates are stored as ISO strings and cannot be told apart from text
        without a field definition, so they come back as TEXT here.
        """

        if raw is None:
            return cls.null()
        if isinstance(raw, bool):
            return cls.boolean(raw)
        if isinstance(raw, (int, float, Decimal)):
            return cls.number(raw)
        if isinstance(raw, (date, datetime)):
            return cls.date_value(raw)
        if isinstance(raw, (list, tuple)):
            return cls.list_value([cls.from_raw(item) for item in raw])
        return cls.text(str(raw))

    @property
    def is_null(self) -> bool:
        return self.kind is ValueKind.NULL

    @property
    def is_empty(self) -> bool:
        if self.kind is ValueKind.NULL:
            return True
        if self.kind is ValueKind.TEXT:
            return self.value == ""
        if self.kind is ValueKind.LIST:
            return len(self.value) == 0
        return False

    def to_raw(self) -> Any:
        if self.kind is ValueKind.NUMBER:
            number: Decimal = self.value
            if number == number.to_integral_value():
                return int(number)
            return float(number)
        if self.kind is ValueKind.DATE:
            return self.value.isoformat()
        if self.kind is ValueKind.LIST:
            return [item.to_raw() for item in self.value]
        return self.value

    def as_text(self) -> str | None:
        if self.kind is ValueKind.NULL:
            return None
        raw = self.to_raw()
        return raw if isinstance(raw, str) else str(raw)


class AttributeBag(Mapping[str, AttributeValue]):
    """Ordered ``field_key -> AttributeValue`` mapping backed by a raw JSON bag."""

    def __init__(self, values: Mapping[str, AttributeValue] | None = None) -> None:
        self._values: dict[str, AttributeValue] = dict(values or {})

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any] | None) -> AttributeBag:
        if not raw:
            return cls()
        return cls({str(key): AttributeValue.from_raw(value) for key, value in raw.items()})

    def __getitem__(self, key: str) -> AttributeValue:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"AttributeBag({self.to_raw()!r})"

    def value_of(self, key: str) -> AttributeValue:
        return self._values.get(key, AttributeValue.null())

    def text_of(self, key: str) -> str | None:
        return self.value_of(key).as_text()

    def with_value(self, key: str, value: AttributeValue) -> AttributeBag:
        updated = dict(self._values)
        updated[key] = value
        return AttributeBag(updated)

    def with_null(self, key: str) -> AttributeBag:
        return self.with_value(key, AttributeValue.null())

    def to_raw(self) -> dict[str, Any]:
        return {key: value.to_raw() for key, value in self._values.items()}


def canonical_record_id(value: str) -> str:
    """Lower-case a UUID-shaped identifier; anything else is returned unchanged."""

    stripped = value.strip()
    try:
        canonical = str(uuid.UUID(stripped))
    except ValueError:
        return value
    return canonical if canonical == stripped.lower() else value


def _invalid(definition: FieldDefinitionRead, message: str) -> ValidationError:
    return ValidationError(
        f"{definition.field_key} {message}",
        details=[{"field_key": definition.field_key, "data_type": definition.data_type, "message": message}],
    )


def coerce_attribute(definition: FieldDefinitionRead, raw: Any) -> AttributeValue:
    """Coerce a raw payload value into the variant declared by ``definition``."""

    if raw is None:
        return AttributeValue.null()

    data_type = definition.data_type
    if data_type == "text":
        if not isinstance(raw, str):
            raise _invalid(definition, "must be text")
        return AttributeValue.text(raw)

    if data_type == "number":
        if isinstance(raw, bool) or not isinstance(raw, (int, float, Decimal)):
            raise _invalid(definition, "must be number")
        return AttributeValue.number(raw)

    if data_type == "bool":
        if not isinstance(raw, bool):
            raise _invalid(definition, "must be bool")
        return AttributeValue.boolean(raw)

    if data_type == "date":
        if isinstance(raw, date):
            return AttributeValue.date_value(raw)
        if isinstance(raw, str):
            try:
                return AttributeValue.date_value(date.fromisoformat(raw))
            except ValueError:
                raise _invalid(definition, "must be ISO date")
        raise _invalid(definition, "must be date")

    if data_type == "select":
        if not isinstance(raw, str):
            raise _invalid(definition, "must be text")
        allowed = definition.allowed_values or []
        if allowed and raw not in allowed:
            raise _invalid(definition, f"must be one of: {', '.join(allowed)}")
        return AttributeValue.text(raw)

    if data_type == "multiselect":
        if not isinstance(raw, list) or any(not isinstance(item, str) for item in raw):
            raise _invalid(definition, "must be a list of text values")
        allowed = definition.allowed_values or []
        rejected = [item for item in raw if allowed and item not in allowed]
        if rejected:
            raise _invalid(definition, f"contains values outside: {', '.join(allowed)}")
        return AttributeValue.list_value([AttributeValue.text(item) for item in raw])

    if data_type == "relationship":
        if raw == "":
            return AttributeValue.null()
        if not isinstance(raw, str):
            raise _invalid(definition, "must be a record identifier")
        return AttributeValue.text(canonical_record_id(raw))

    raise _invalid(definition, "has an unsupported data_type")
