from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import RelationResolutionError, ValidationError

"""Human-facing classification of row errors.

Turns an exception (or the message recorded for it) into a short type label
and an optional multi-line hint with likely causes and fixes. Used by the
error report; the executor's machine-readable ``error_type`` is separate.
"""

__all__ = [
    "Classification",
    "ErrorClassifier",
    "UNHANDLED",
]

UNHANDLED = "Unhandled error"

_BOOLEAN_TOKENS = frozenset({"true", "false", "yes", "no", "on", "off"})

_MISSING_DEFAULT = re.compile(r"Field '([^']+)' doesn't have a default value", re.IGNORECASE)
_CANNOT_BE_NULL = re.compile(r"Column '([^']+)' cannot be null", re.IGNORECASE)
_NOT_NULL_FAILED = re.compile(r"NOT NULL constraint failed: (?:\w+\.)?(\w+)", re.IGNORECASE)
_PG_NOT_NULL = re.compile(r'null value in column "([^"]+)".*violates not-null constraint', re.IGNORECASE)
_INCORRECT_INTEGER = re.compile(
    r"Incorrect integer value: '([^']*)' for column '([^']+)'", re.IGNORECASE
)
_PG_INVALID_INTEGER = re.compile(r'invalid input syntax for (?:type )?integer: "([^"]*)"', re.IGNORECASE)


@dataclass(frozen=True)
class Classification:
    type: str
    hint: str | None = None


def build_hint(
    description: str,
    causes: Sequence[str] = (),
    solutions: Sequence[str] = (),
) -> str:
    lines = [description]
    if causes:
        lines.append("Possible causes:")
        lines.extend(f"  {i}. {cause}" for i, cause in enumerate(causes, start=1))
    if solutions:
        lines.append("Solutions:")
        lines.extend(f"  • {s}" for s in solutions)
    return "\n".join(lines)


def _relation_of(column: str) -> str | None:
    return column[:-3] if column.endswith("_id") else None


class ErrorClassifier:
    def classify(self, exc: BaseException) -> Classification:
        if isinstance(exc, RelationResolutionError):
            return self._classify_relation(exc)
        if isinstance(exc, ValidationError):
            return self.classify_message("Validation failed")
        return self.classify_message(str(exc))

    def _classify_relation(self, exc: RelationResolutionError) -> Classification:
        name = exc.relation
        if exc.kind == "missing_required":
            hint = build_hint(
                f"The related model '{name}' requires additional fields that are not mapped.",
                [
                    "Make fields nullable in the related model",
                    "Add the missing columns to your source file",
                    "Disable 'create_if_missing' and ensure related records exist",
                ],
            )
        elif exc.kind == "unique_violation":
            hint = build_hint(
                f"A {name} with conflicting values already exists.",
                [
                    "Check for duplicates in source data",
                    "Use the update duplicate strategy instead of error",
                ],
            )
        elif exc.kind == "data_too_long":
            hint = build_hint(
                f"Value for {exc.lookup_field}='{exc.lookup_value}' exceeds the maximum column length.",
                [
                    "Truncate the value in source data",
                    "Add truncate transform (e.g., truncate:255)",
                    "Increase the column size",
                ],
            )
        else:
            hint = f"Failed to resolve relation '{name}': {exc}"
        return Classification(type=f"Cannot create/lookup related '{name}' ({exc.kind})", hint=hint)

    def classify_message(self, message: str) -> Classification:
        """Classify a raw error message by the storage and engine patterns it contains."""
        m = _MISSING_DEFAULT.search(message)
        if m:
            return self._missing_value(m.group(1))

        m = (
            _CANNOT_BE_NULL.search(message)
            or _NOT_NULL_FAILED.search(message)
            or _PG_NOT_NULL.search(message)
        )
        if m:
            return self._null_value(m.group(1))

        m = _INCORRECT_INTEGER.search(message)
        if m:
            return self._integer_mismatch(m.group(1), m.group(2))
        m = _PG_INVALID_INTEGER.search(message)
        if m:
            return self._integer_mismatch(m.group(1), None)

        lowered = message.lower()
        if "incorrect datetime value" in lowered or "invalid datetime format" in lowered:
            return Classification(
                type="Invalid datetime value",
                hint=build_hint(
                    "A date/datetime column received an unparseable value.",
                    solutions=[
                        "Add a date parser transform (e.g., cast:date or parse_date:%d/%m/%Y)",
                        "Check source data format matches expected format",
                    ],
                ),
            )

        if "duplicate entry" in lowered or "unique constraint" in lowered or "duplicate key" in lowered:
            return Classification(
                type="Duplicate key violation",
                hint=build_hint(
                    "A record with the same unique key already exists.",
                    solutions=[
                        "Set duplicate_strategy to 'update' or 'skip' in mapping options",
                        "Check for duplicates in source data",
                    ],
                ),
            )

        if "foreign key constraint" in lowered or "integrity constraint violation" in lowered:
            return Classification(
                type="Foreign key constraint violation",
                hint=build_hint(
                    "A referenced record does not exist in the related table.",
                    solutions=[
                        "Enable 'create_if_missing' to auto-create related records",
                        "Ensure related records exist before importing",
                    ],
                ),
            )

        if "data too long" in lowered or "data truncated" in lowered or "value too long" in lowered:
            return Classification(
                type="Data too long for column",
                hint=build_hint(
                    "A value exceeds the maximum column length.",
                    solutions=[
                        "Add a truncate transform (e.g., truncate:255)",
                        "Increase the column size",
                    ],
                ),
            )

        if "validation failed" in lowered:
            return Classification(
                type="Validation error",
                hint="One or more fields failed validation. See validation errors section for details.",
            )

        return Classification(type=UNHANDLED)

    def _missing_value(self, column: str) -> Classification:
        relation = _relation_of(column)
        if relation is None:
            return Classification(
                type=f"Missing required field '{column}'",
                hint=(
                    f"The field '{column}' is NOT NULL but no value was provided. "
                    "Check your mapping or add a default value."
                ),
            )
        return Classification(
            type=f"Relation '{relation}' not resolved (missing {column})",
            hint=build_hint(
                f"The '{relation}' relation was not resolved before saving.",
                [
                    "Lookup field was empty/null in source data",
                    f"'create_if_missing' is enabled but required fields for {relation} are not mapped",
                    "Lookup found no matching record and creation is disabled",
                ],
                [
                    "Disable 'create_if_missing' if you only want to link to existing records",
                    "Ensure source data has values for the lookup field",
                    "Map all required fields for the related model",
                ],
            ),
        )

    def _null_value(self, column: str) -> Classification:
        relation = _relation_of(column)
        if relation is None:
            return Classification(
                type=f"NULL value for required field '{column}'",
                hint=(
                    f"Field '{column}' cannot be NULL. Check if the source column is empty "
                    "or the mapping/transform is incorrect."
                ),
            )
        return Classification(
            type=f"Relation '{relation}' returned NULL",
            hint=build_hint(
                f"The relation lookup for '{relation}' failed to find or create a record.",
                [
                    "Is the lookup field empty in source?",
                    "If 'create_if_missing', are all required fields mapped?",
                ],
            ),
        )

    def _integer_mismatch(self, value: str, column: str | None) -> Classification:
        label = column or "integer"
        if value.lower() in _BOOLEAN_TOKENS:
            return Classification(
                type=f"Boolean not cast (column '{label}' received '{value}')",
                hint=build_hint(
                    f"Column '{label}' expects an integer (0/1) but received a string boolean ('{value}').",
                    solutions=[
                        "Add the cast:bool transform to convert boolean strings",
                        'Example: "true" → 1, "false" → 0',
                    ],
                ),
            )
        relation = _relation_of(column) if column else None
        if relation is not None:
            return Classification(
                type=f"FK column received non-ID value ('{column}')",
                hint=build_hint(
                    f"Column '{column}' expects an integer ID but received '{value}'.",
                    solutions=[
                        f"Map to a relation path (e.g., {relation}.name) instead of the ID field",
                        "Enable 'create_if_missing' to auto-create related records",
                    ],
                ),
            )
        return Classification(
            type=f"Type mismatch (integer column '{label}' received '{value}')",
            hint=build_hint(
                f"Column '{label}' expects an integer but received a non-numeric value.",
                solutions=[
                    "Apply a cast transform (e.g., cast:int) to convert the value",
                    "Check if the source column contains valid numeric data",
                ],
            ),
        )
