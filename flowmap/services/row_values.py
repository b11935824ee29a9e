from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from ..models.flow_run import TruncationRecord
from ..models.mapping import ColumnMapping
from ..models.row import Row
from ..transforms.engine import TransformContext, TransformEngine

"""Source value extraction for column mappings.

Order of operations for one column: read the source field (virtual
``__default_*`` / ``__skip_*`` / ``__random_*`` columns read nothing), fall
back to the column default when the value is None or '', then apply the
transform chain with the row as context.
"""

__all__ = ["RowValues"]


class RowValues:
    def __init__(self, engine: TransformEngine | None = None) -> None:
        self.engine = engine or TransformEngine()

    def raw(self, row: Row, column: ColumnMapping) -> Any:
        if column.is_virtual:
            return None
        return row.get(column.source)

    def value(
        self,
        row: Row,
        column: ColumnMapping,
        truncations: list[TruncationRecord] | None = None,
    ) -> Any:
        value = self.raw(row, column)
        if value is None or value == "":
            value = column.default if column.default is not None else value
        if not column.transforms:
            return value
        context = TransformContext(
            row=row.fields,
            line_number=row.line_number,
            field=column.target,
            truncations=truncations,
        )
        return self.engine.apply(value, column.transforms, context)

    @staticmethod
    def rules(columns: Iterable[ColumnMapping]) -> dict[str, str]:
        return {c.target: c.validation_rule for c in columns if c.validation_rule}
