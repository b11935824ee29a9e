from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

"""Error taxonomy for the mapping engine.

Two kinds are fatal and raised before any row is processed:
``MappingStructureError`` and ``DependencyCycleError``. Everything else is
row-scoped: the flow executor records it with the row number and decides,
through the error policy, whether to go on.
"""

__all__ = [
    "FlowmapError",
    "MappingStructureError",
    "DependencyCycleError",
    "ValidationError",
    "DuplicateKeyError",
    "RelationResolutionError",
    "RELATION_ERROR_KINDS",
    "classify_storage_message",
]

RELATION_ERROR_KINDS = (
    "missing_required",
    "unique_violation",
    "data_too_long",
    "foreign_key",
    "type_mismatch",
    "not_found",
    "unknown",
)

# Substring patterns (lower case) per storage error kind, checked in order.
_STORAGE_PATTERNS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("missing_required", (
        "doesn't have a default value",
        "cannot be null",
        "not null constraint failed",
        "violates not-null constraint",
    )),
    ("unique_violation", (
        "duplicate entry",
        "unique constraint",
        "duplicate key value",
    )),
    ("foreign_key", (
        "foreign key constraint",
    )),
    ("data_too_long", (
        "data too long",
        "string data, right truncated",
        "value too long for type",
    )),
    ("type_mismatch", (
        "incorrect",
        "invalid input syntax",
        "invalid",
    )),
)


class FlowmapError(Exception):
    """Base class for every error raised by the engine."""


class MappingStructureError(FlowmapError):
    """Malformed mapping document: bad target path, unknown transform, missing keys."""


class DependencyCycleError(FlowmapError):
    """Entity types whose required-parent relations form a cycle."""

    def __init__(self, members: Sequence[str]) -> None:
        self.members: tuple[str, ...] = tuple(members)
        super().__init__(
            "Circular dependency detected between entity types: " + ", ".join(self.members)
        )


class ValidationError(FlowmapError):
    """Field-level rule failure. ``errors`` maps field -> list of messages."""

    def __init__(
        self,
        errors: Mapping[str, Sequence[str]],
        data: Mapping[str, Any] | None = None,
        message: str | None = None,
    ) -> None:
        self.errors: dict[str, list[str]] = {k: list(v) for k, v in errors.items()}
        self.data: dict[str, Any] = dict(data or {})
        if message is None:
            fields = ", ".join(self.errors) or "unknown"
            message = f"Validation failed for field(s): {fields}"
        super().__init__(message)


class DuplicateKeyError(FlowmapError):
    """A unique-key collision under the ``error`` duplicate strategy."""

    def __init__(self, model: str, key_values: Mapping[str, Any]) -> None:
        self.model = model
        self.key_values: dict[str, Any] = dict(key_values)
        pairs = ", ".join(f"{k}={v}" for k, v in self.key_values.items())
        super().__init__(f"Duplicate record found for unique key: {pairs}")


class RelationResolutionError(FlowmapError):
    """A relation occurrence that could not be looked up or created.

    ``kind`` is one of :data:`RELATION_ERROR_KINDS`; ``missing_required``,
    ``unique_violation`` and ``data_too_long`` are the ones callers usually
    branch on.
    """

    def __init__(
        self,
        relation: str,
        lookup_field: str | None,
        lookup_value: Any,
        kind: str,
        *,
        missing_fields: Iterable[str] = (),
        detail: str | None = None,
        create_if_missing: bool = False,
    ) -> None:
        if kind not in RELATION_ERROR_KINDS:
            kind = "unknown"
        self.relation = relation
        self.lookup_field = lookup_field
        self.lookup_value = lookup_value
        self.kind = kind
        self.missing_fields: tuple[str, ...] = tuple(missing_fields)
        self.create_if_missing = create_if_missing
        super().__init__(self._build_message(detail))

    def _build_message(self, detail: str | None) -> str:
        base = (
            f"Cannot resolve relation '{self.relation}' "
            f"(lookup: {self.lookup_field}={self.lookup_value})"
        )
        if self.kind == "missing_required":
            fields = ", ".join(self.missing_fields)
            suffix = f" Missing: {fields}." if fields else ""
            return (
                f"{base}: The related model requires additional fields that are not "
                f"available in the source data.{suffix}"
            )
        if self.kind == "unique_violation":
            return f"{base}: A record with conflicting unique values already exists."
        if self.kind == "foreign_key":
            return f"{base}: Referenced record does not exist."
        if self.kind == "data_too_long":
            return f"{base}: One or more values exceed the maximum allowed length."
        if self.kind == "type_mismatch":
            return f"{base}: One or more values have an invalid type."
        if self.kind == "not_found":
            return f"{base}: No matching record exists and creation is not allowed."
        return f"{base}: {detail}" if detail else base

    @classmethod
    def from_storage_error(
        cls,
        exc: BaseException,
        relation: str,
        lookup_field: str | None,
        lookup_value: Any,
        *,
        create_if_missing: bool = False,
    ) -> RelationResolutionError:
        """Wrap a storage-layer exception raised while creating a related entity."""
        kind = classify_storage_message(str(exc))
        err = cls(
            relation,
            lookup_field,
            lookup_value,
            kind,
            detail=str(exc),
            create_if_missing=create_if_missing,
        )
        err.__cause__ = exc
        return err

    def suggested_actions(self) -> dict[str, str]:
        if self.kind == "missing_required":
            return {
                "skip": "Skip this row (don't import)",
                "lookup_only": "Only lookup existing records, don't create new ones",
                "continue": "Continue with errors",
            }
        if self.kind == "unique_violation":
            return {
                "skip": "Skip this row",
                "use_existing": "Use the existing related record",
                "continue": "Continue with errors",
            }
        if self.kind == "data_too_long":
            return {
                "truncate": "Truncate values to fit",
                "skip": "Skip this row",
                "continue": "Continue with errors",
            }
        return {
            "skip": "Skip this row",
            "continue": "Continue with errors",
            "abort": "Abort the import",
        }


def classify_storage_message(message: str) -> str:
    """Map a storage error message onto a relation error kind."""
    lowered = message.lower()
    for kind, patterns in _STORAGE_PATTERNS:
        if any(p in lowered for p in patterns):
            return kind
    return "unknown"
