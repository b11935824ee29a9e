"""Domain models for the mapping engine.

Mapping document values, derived target paths, entity/relation descriptors,
source rows and run state.
"""

from .error_record import ErrorRecord
from .flow_run import (
    EmptyRow,
    ErrorContext,
    ErrorDecision,
    FlowRun,
    FlowRunStatus,
    RunError,
    RunStatistics,
    RunWarning,
    TruncationRecord,
)
from .mapping import (
    AssociationStrategy,
    ColumnMapping,
    DuplicateStrategy,
    EntityMapping,
    ErrorPolicy,
    FlowConfig,
    MappingDefinition,
    MappingKind,
    MappingOptions,
    RelationLookup,
    RelationSync,
)
from .relation import (
    AttributeDescriptor,
    EntityTypeDescriptor,
    NotFound,
    RelationDescriptor,
    RelationKind,
)
from .row import Row
from .target_path import PathSegment, TargetPath

__all__ = [
    # Mapping document
    "AssociationStrategy",
    "ColumnMapping",
    "DuplicateStrategy",
    "EntityMapping",
    "ErrorPolicy",
    "FlowConfig",
    "MappingDefinition",
    "MappingKind",
    "MappingOptions",
    "RelationLookup",
    "RelationSync",
    # Paths and descriptors
    "PathSegment",
    "TargetPath",
    "AttributeDescriptor",
    "EntityTypeDescriptor",
    "NotFound",
    "RelationDescriptor",
    "RelationKind",
    # Run state
    "Row",
    "EmptyRow",
    "ErrorContext",
    "ErrorDecision",
    "ErrorRecord",
    "FlowRun",
    "FlowRunStatus",
    "RunError",
    "RunStatistics",
    "RunWarning",
    "TruncationRecord",
]
