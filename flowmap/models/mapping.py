from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

"""Mapping document models.

These mirror the serialized mapping document:

    {version, name, description?, source_schema?, flow_config?, mappings: [...]}

Loading, schema validation and structural checks live in
``flowmap.config.loader``; the models here are plain frozen values.
"""

__all__ = [
    "MappingKind",
    "DuplicateStrategy",
    "AssociationStrategy",
    "RelationSync",
    "ErrorPolicy",
    "RelationLookup",
    "ColumnMapping",
    "MappingOptions",
    "EntityMapping",
    "FlowConfig",
    "MappingDefinition",
    "VIRTUAL_SOURCE_PREFIXES",
]

# Source columns with these prefixes carry no source value; the default is used.
VIRTUAL_SOURCE_PREFIXES = ("__default_", "__skip_", "__random_")


class MappingKind(Enum):
    STANDARD = "model"
    ASSOCIATION_SYNC = "pivot_sync"


class DuplicateStrategy(Enum):
    ERROR = "error"
    SKIP = "skip"
    UPDATE = "update"


class AssociationStrategy(Enum):
    SYNC = "sync"  # full replace of the owner's association set
    ATTACH = "attach"  # incremental, never detaches
    DETACH = "detach"  # remove the listed associations


class RelationSync(Enum):
    KEEP = "keep"  # stale dependents are left untouched
    REPLACE = "replace"  # stale dependents are deleted


class ErrorPolicy(Enum):
    STOP = "stop"
    CONTINUE = "continue"


@dataclass(frozen=True)
class RelationLookup:
    field: str
    create_if_missing: bool = False
    delimiter: str | None = None


@dataclass(frozen=True)
class ColumnMapping:
    source: str
    target: str
    transforms: tuple[str, ...] = ()
    default: Any = None
    validation_rule: str | None = None
    relation_lookup: RelationLookup | None = None

    @property
    def is_virtual(self) -> bool:
        return self.source.startswith(VIRTUAL_SOURCE_PREFIXES)


@dataclass(frozen=True)
class MappingOptions:
    unique_key: tuple[str, ...] = ()
    duplicate_strategy: DuplicateStrategy = DuplicateStrategy.ERROR
    association_strategy: AssociationStrategy = AssociationStrategy.SYNC
    relation_sync: RelationSync = RelationSync.KEEP


@dataclass(frozen=True)
class EntityMapping:
    model: str
    execution_order: int
    columns: tuple[ColumnMapping, ...]
    options: MappingOptions = field(default_factory=MappingOptions)
    kind: MappingKind = MappingKind.STANDARD
    relation_path: str | None = None  # "Model.relation" for pivot_sync mappings

    @property
    def is_association_sync(self) -> bool:
        return self.kind is MappingKind.ASSOCIATION_SYNC

    @property
    def label(self) -> str:
        return self.relation_path if self.is_association_sync and self.relation_path else self.model


@dataclass(frozen=True)
class FlowConfig:
    chunk_size: int = 1000
    error_policy: ErrorPolicy = ErrorPolicy.CONTINUE
    skip_empty_rows: bool = True
    truncate_long_fields: bool = True

    def with_overrides(self, **overrides: Any) -> FlowConfig:
        """Return a copy with every non-None override applied."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **values) if values else self


@dataclass(frozen=True)
class MappingDefinition:
    name: str
    mappings: tuple[EntityMapping, ...]
    version: str = "1.0"
    description: str | None = None
    source_schema: dict[str, Any] | None = None
    flow_config: FlowConfig = field(default_factory=FlowConfig)
