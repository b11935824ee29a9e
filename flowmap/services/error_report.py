from __future__ import annotations

import json
import logging
import re
from collections import Counter
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from ..models.flow_run import FlowRun, RunError
from ..models.mapping import MappingDefinition
from .error_classifier import ErrorClassifier

"""Plain-text error report for a finished run.

Written next to the JSON Lines error log, but meant for people: errors are
classified, validation failures come with suggested fixes, and the mapping
configuration is echoed at the end so the report stands on its own.
"""

__all__ = [
    "ErrorReportGenerator",
    "REPORTS_DIR",
]

logger = logging.getLogger(__name__)

REPORTS_DIR = Path("./reports")
TIMESTAMP_FMT = "%Y-%m-%d_%H-%M-%S"

_RULE = "=" * 80
_THIN = "-" * 40

_MIN_CHARS = re.compile(r"must be at least (\d+) characters?", re.IGNORECASE)
_MAX_CHARS = re.compile(r"must not be greater than (\d+) characters?", re.IGNORECASE)
_MIN_VALUE = re.compile(r"must be at least (\d+(?:\.\d+)?)", re.IGNORECASE)
_MAX_VALUE = re.compile(r"must not be greater than (\d+(?:\.\d+)?)", re.IGNORECASE)


def _display(value: Any, max_length: int = 50) -> str:
    text = "" if value is None else str(value)
    return text[:max_length] + "..." if len(text) > max_length else text


def _as_list(messages: Any) -> list[str]:
    return [str(m) for m in messages] if isinstance(messages, (list, tuple)) else [str(messages)]


def validation_error_type(errors: Mapping[str, Any]) -> str:
    types: list[str] = []
    for field, messages in errors.items():
        for message in _as_list(messages):
            lowered = message.lower()
            if _MIN_CHARS.search(message):
                types.append(f"Field length too short ({field})")
            elif _MAX_CHARS.search(message):
                types.append(f"Field length too long ({field})")
            elif "email" in lowered:
                types.append(f"Invalid email format ({field})")
            elif "number" in lowered or "integer" in lowered:
                types.append(f"Invalid numeric value ({field})")
            elif "required" in lowered:
                types.append(f"Missing required field ({field})")
            elif "date" in lowered:
                types.append(f"Invalid date format ({field})")
            else:
                types.append(f"Validation failed ({field})")
    if len(types) == 1:
        return types[0]
    return "Multiple validation errors (" + ", ".join(dict.fromkeys(types)) + ")"


def validation_suggestion(field: str, message: str, value: Any) -> str | None:
    """Return a remediation hint for one validation message, or None when there is none."""
    length = len(value) if isinstance(value, str) else 0
    lowered = message.lower()

    m = _MIN_CHARS.search(message)
    if m:
        minimum = int(m.group(1))
        if length == 0:
            return (
                f"Field '{field}' is empty. Add a default value in the mapping "
                "or ensure source data contains a value."
            )
        return (
            f"Field '{field}' is too short ({length} chars, minimum {minimum}). "
            f"Current value: '{value}'. Ensure source data meets minimum length requirement."
        )
    m = _MAX_CHARS.search(message)
    if m:
        maximum = int(m.group(1))
        return (
            f"Field '{field}' exceeds maximum length ({length} chars, maximum {maximum}). "
            f"Add 'truncate:{maximum}' transform to automatically truncate long values, "
            "or manually shorten the value in source data."
        )
    if "valid email" in lowered:
        return (
            f"Field '{field}' contains an invalid email format. Current value: '{_display(value)}'. "
            "Check for typos, missing @ symbol, or invalid domain. "
            "Example of valid format: 'user@example.com'"
        )
    if "must be a number" in lowered:
        return (
            f"Field '{field}' must be numeric. Current value: '{_display(value)}'. "
            "Add 'cast:int' or 'cast:float' transform to convert the value, "
            "or ensure source data contains valid numeric values."
        )
    if "required" in lowered and (value is None or value == ""):
        return (
            f"Field '{field}' is required but is empty. Add a default value in the mapping "
            "configuration, or ensure source data contains a value for this field."
        )
    if "valid date" in lowered:
        return (
            f"Field '{field}' contains an invalid date format. Current value: '{_display(value)}'. "
            "Add 'cast:date' or 'parse_date:<format>' transform, or ensure source data uses "
            "a valid date format (e.g., YYYY-MM-DD)."
        )
    if "true or false" in lowered:
        return (
            f"Field '{field}' must be a boolean value. Current value: '{_display(value)}'. "
            "Add 'cast:bool' transform to convert strings like 'true'/'false' or 'yes'/'no'."
        )
    if "must be an integer" in lowered:
        return (
            f"Field '{field}' must be an integer. Current value: '{_display(value)}'. "
            "Add 'cast:int' transform to convert the value, or ensure source data contains whole numbers."
        )
    m = _MIN_VALUE.search(message)
    if m:
        return (
            f"Field '{field}' value '{_display(value)}' is below minimum ({m.group(1)}). "
            f"Ensure source data contains values >= {m.group(1)}, or adjust validation rules."
        )
    m = _MAX_VALUE.search(message)
    if m:
        return (
            f"Field '{field}' value '{_display(value)}' exceeds maximum ({m.group(1)}). "
            f"Ensure source data contains values <= {m.group(1)}, or adjust validation rules."
        )
    if "format is invalid" in lowered:
        return (
            f"Field '{field}' does not match the required format. Current value: '{_display(value)}'. "
            "Check the validation rule pattern and ensure source data matches the expected format."
        )
    if "selected" in lowered and "invalid" in lowered:
        return (
            f"Field '{field}' value '{_display(value)}' is not one of the allowed values. "
            "Map source values with a transform or extend the 'in:' rule."
        )
    return None


class ErrorReportGenerator:
    def __init__(self, classifier: ErrorClassifier | None = None, directory: Path | None = None) -> None:
        self.classifier = classifier or ErrorClassifier()
        self.directory = directory or REPORTS_DIR

    def generate(
        self,
        run: FlowRun,
        source: str,
        definition: MappingDefinition | None = None,
    ) -> Path | None:
        """Write the report when the run has errors or skipped rows.

        Returns the report path, or None when there was nothing to report.
        """
        if run.error_count == 0 and run.skipped_rows == 0 and not run.errors:
            return None
        self.directory.mkdir(parents=True, exist_ok=True)
        now = datetime.now()
        stem = Path(source).stem if source else "input"
        path = self.directory / f"error-report_{stem}_{now.strftime(TIMESTAMP_FMT)}.txt"
        lines = [
            *self._header(),
            *self._summary(run, source, definition, now),
            *self._details(run),
            *self._mapping_info(definition),
            *self._footer(),
        ]
        path.write_text("\n".join(lines), encoding="utf-8")
        logger.info("Error report written to %s", path)
        return path

    def error_type(self, error: RunError) -> str:
        validation = error.context.get("errors")
        if isinstance(validation, Mapping) and validation:
            return validation_error_type(validation)
        return self.classifier.classify_message(error.message).type

    def _header(self) -> list[str]:
        return [_RULE, "FLOWMAP ERROR REPORT", _RULE, ""]

    def _footer(self) -> list[str]:
        return [_RULE, "END OF REPORT", _RULE]

    def _summary(
        self,
        run: FlowRun,
        source: str,
        definition: MappingDefinition | None,
        now: datetime,
    ) -> list[str]:
        model = definition.mappings[0].label if definition and definition.mappings else "Unknown"
        return [
            "SUMMARY",
            _THIN,
            f"Generated: {now.strftime('%Y-%m-%d %H:%M:%S')}",
            f"Source File: {source}",
            f"Target Model: {model}",
            f"Status: {run.status.label}",
            "",
            f"Total Rows: {run.total_rows}",
            f"Imported: {run.imported_rows}",
            f"Skipped: {run.skipped_rows}",
            f"Errors: {run.error_count}",
            f"Success Rate: {run.success_rate:.2f}%",
            f"Duration: {run.duration or 0:.2f}s",
            "",
        ]

    def _details(self, run: FlowRun) -> list[str]:
        lines = [_RULE, "ERROR DETAILS", _RULE, ""]
        if not run.errors:
            lines.extend(["No detailed error information available.", ""])
            return lines

        types = [self.error_type(e) for e in run.errors]
        lines.extend(["ERROR TYPE SUMMARY", _THIN])
        for name, count in Counter(types).items():
            lines.append(f"  • {name}: {count} occurrence(s)")
        lines.append("")
        for number, (error, name) in enumerate(zip(run.errors, types), start=1):
            lines.extend(self._entry(number, error, name))
        return lines

    def _entry(self, number: int, error: RunError, error_type: str) -> list[str]:
        lines = [f"[Error #{number}] {error_type}", _THIN]
        if error.row is not None:
            lines.append(f"Row: {error.row}")
        if error.mapping:
            lines.append(f"Mapping: {error.mapping}")
        lines.append(f"Message: {error.message}")
        data = error.context.get("data")
        data = data if isinstance(data, Mapping) else {}

        validation = error.context.get("errors")
        if isinstance(validation, Mapping) and validation:
            lines.extend(["", "Validation Errors:"])
            suggestions: list[str] = []
            for field, messages in validation.items():
                for message in _as_list(messages):
                    lines.append(f"  • {field}: {message}")
                    hint = validation_suggestion(field, message, data.get(field))
                    if hint is not None and hint not in suggestions:
                        suggestions.append(hint)
            if suggestions:
                lines.extend(["", "Suggested Solutions:"])
                lines.extend(f"  • {s}" for s in suggestions)
        else:
            hint = self.classifier.classify_message(error.message).hint
            if hint:
                lines.extend(["", hint])

        if data:
            lines.extend(["", "Row Data:"])
            for key, value in data.items():
                if value is None:
                    shown = "<null>"
                elif isinstance(value, (list, dict)):
                    shown = json.dumps(value, ensure_ascii=False, default=str)
                else:
                    shown = str(value)
                lines.append(f"  - {key}: {shown}")
        lines.append("")
        return lines

    def _mapping_info(self, definition: MappingDefinition | None) -> list[str]:
        lines = [_RULE, "MAPPING CONFIGURATION", _RULE, ""]
        if definition is None:
            return lines
        for mapping in definition.mappings:
            lines.append(f"Model: {mapping.label}")
            lines.append("Columns:")
            for column in mapping.columns:
                transforms = f" [{', '.join(column.transforms)}]" if column.transforms else ""
                lines.append(f"  - {column.source} → {column.target}{transforms}")
            if mapping.options.unique_key:
                lines.append("Unique Key: " + ", ".join(mapping.options.unique_key))
                lines.append(f"On Duplicate: {mapping.options.duplicate_strategy.value}")
            lines.append("")
        return lines
