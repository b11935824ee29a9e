from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

"""ErrorRecord model for the JSON Lines error log.

One record per row-scoped failure. ``row`` is -1 when the failure is not tied
to a specific row (fatal mapping or source errors).
"""

__all__ = [
    "ErrorRecord",
]


@dataclass(frozen=True)
class ErrorRecord:
    """Structured error record.

    Attributes:
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        source: Source file (or stream label) being imported
        mapping: Entity mapping label (model name or ``Model.relation``)
        row: Row number (1-based), -1 when unknown
        error_type: Classification in UPPER_SNAKE_CASE
        message: Error message
    """
    timestamp: str
    source: str
    mapping: str
    row: int
    error_type: str
    message: str

    @staticmethod
    def create(source: str, mapping: str, row: int, error_type: str, message: str) -> ErrorRecord:
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        return ErrorRecord(
            timestamp=ts,
            source=source,
            mapping=mapping,
            row=row,
            error_type=error_type,
            message=message,
        )

    def to_json_line(self) -> str:
        # asdict keeps the key set fixed to the dataclass fields
        return json.dumps(asdict(self), ensure_ascii=False)
