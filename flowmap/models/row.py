from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

"""Row model.

A Row is created once per source record by the reader and consumed by the
flow executor. ``line_number`` is the 1-based position of the record among
the source's data records.
"""

__all__ = [
    "Row",
    "ROW_ID_COLUMNS",
]

# Columns checked, in order, when a row needs a human-facing identifier.
ROW_ID_COLUMNS = ("id", "ID", "Id", "row_id", "rowId", "external_id", "externalId")


def _freeze(fields: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(fields))


@dataclass(frozen=True)
class Row:
    fields: Mapping[str, Any] = field(default_factory=dict)
    line_number: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", _freeze(self.fields))

    def get(self, column: str, default: Any = None) -> Any:
        return self.fields.get(column, default)

    def has(self, column: str) -> bool:
        return self.fields.get(column) is not None

    def is_empty(self) -> bool:
        for value in self.fields.values():
            if value is None:
                continue
            if isinstance(value, str) and value.strip() == "":
                continue
            if isinstance(value, (list, dict)) and not value:
                continue
            return False
        return True

    def row_id(self) -> Any:
        for column in ROW_ID_COLUMNS:
            value = self.fields.get(column)
            if value is not None and value != "":
                return value
        return None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.fields)
