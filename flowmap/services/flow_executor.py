from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from ..errors import DependencyCycleError, MappingStructureError, ValidationError
from ..logging.error_log import ErrorLogBuffer
from ..models.error_record import ErrorRecord
from ..models.flow_run import (
    EmptyRow,
    ErrorContext,
    ErrorDecision,
    FlowRun,
    RunError,
    RunStatistics,
    RunWarning,
    TruncationRecord,
)
from ..models.mapping import EntityMapping, ErrorPolicy, FlowConfig, MappingDefinition
from ..models.relation import RelationKind
from ..models.row import Row
from ..transforms.engine import TransformEngine
from .dependency_graph import DependencyGraphBuilder, validate_mapping_dependencies
from .record_loader import RecordLoader
from .relation_types import DescriptorRegistry, ModelRegistry
from .row_values import RowValues

"""Top-level row loop.

Before the first row: mappings are resolved against the model registry,
compiled, and ordered (entity dependency rank first, then execution_order;
pivot mappings after both of their endpoints). Structural problems and
dependency cycles fail the run before any row is touched.

Each row runs every mapping in that order and is committed on its own; any
failure rolls the row back. Validation failures count as skipped, other
failures as errors. After every error the decision hook (if any) and the
error policy decide whether the run goes on.
"""

__all__ = [
    "ErrorDecisionHook",
    "ProgressCallback",
    "FlowExecutor",
    "process",
    "WARNING_EXAMPLES",
]

logger = logging.getLogger(__name__)

ErrorDecisionHook = Callable[[ErrorContext], ErrorDecision]
ProgressCallback = Callable[[FlowRun], None]

WARNING_EXAMPLES = 10
LARGE_RUN_ROWS = 10000


def _upper_snake(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", name).upper()


@dataclass
class _ErrorState:
    policy: ErrorPolicy
    force_stop: bool = False
    silenced: set[str] = field(default_factory=set)


class FlowExecutor:
    def __init__(
        self,
        session: Session,
        models: ModelRegistry,
        *,
        registry: DescriptorRegistry | None = None,
        transform_engine: TransformEngine | None = None,
        error_decision: ErrorDecisionHook | None = None,
        on_progress: ProgressCallback | None = None,
        error_log: ErrorLogBuffer | None = None,
    ) -> None:
        self.session = session
        self.models = models
        self.registry = registry or DescriptorRegistry()
        self.values = RowValues(transform_engine or TransformEngine())
        self.error_decision = error_decision
        self.on_progress = on_progress
        self.error_log = error_log

    # preparation

    def _endpoints(self, mapping: EntityMapping) -> tuple[type, type]:
        path = mapping.relation_path or ""
        if "." not in path:
            raise MappingStructureError(f"pivot_sync mapping needs relation_path 'Model.relation', got '{path}'")
        owner_name, relation_name = path.rsplit(".", 1)
        owner = self.models.get(owner_name)
        rel = self.registry.describe(owner).relation(relation_name)
        if rel is None or rel.kind is not RelationKind.MANY_TO_MANY:
            raise MappingStructureError(f"'{path}' is not a many-to-many relation")
        return owner, rel.target

    def order(self, definition: MappingDefinition) -> list[EntityMapping]:
        """Return the mappings in processing order.

        Raises MappingStructureError for unknown models or pivot paths and
        DependencyCycleError when the mapped entity types form a cycle.
        """
        types: list[type] = []
        for m in definition.mappings:
            if not m.is_association_sync:
                model = self.models.get(m.model)
                if model not in types:
                    types.append(model)
        endpoints = {id(m): self._endpoints(m) for m in definition.mappings if m.is_association_sync}

        builder = DependencyGraphBuilder(self.registry, required_only=True)
        rank = {t: i for i, t in enumerate(builder.build_order(types))}

        def key(item: tuple[int, EntityMapping]) -> tuple:
            index, m = item
            if m.is_association_sync:
                owner, target = endpoints[id(m)]
                return (max(rank.get(owner, -1), rank.get(target, -1)), 1, m.execution_order, index)
            return (rank[self.models.get(m.model)], 0, m.execution_order, index)

        ordered = [m for _, m in sorted(enumerate(definition.mappings), key=key)]
        for problem in validate_mapping_dependencies(definition, self.models, self.registry):
            logger.warning("%s", problem)
        logger.debug("processing order: %s", ", ".join(m.label for m in ordered))
        return ordered

    # row loop

    def execute(
        self,
        rows: Iterable[Row],
        definition: MappingDefinition,
        *,
        source: str = "",
        config: FlowConfig | None = None,
    ) -> FlowRun:
        config = config or definition.flow_config
        rows = list(rows)
        run = FlowRun.create(source, total_rows=len(rows))

        loader = RecordLoader(
            self.session,
            self.models,
            registry=self.registry,
            values=self.values,
            truncate_long_fields=config.truncate_long_fields,
        )
        try:
            ordered = self.order(definition)
            for m in ordered:
                if m.is_association_sync:
                    loader.pivots.plan(m)
                else:
                    loader.plan(m)
        except (MappingStructureError, DependencyCycleError) as e:
            logger.error("%s", e)
            self._record(source, "<MAPPING>", -1, e)
            self._flush_error_log()
            return run.fail(str(e), e)

        run = run.start()
        stats = RunStatistics()
        state = _ErrorState(policy=config.error_policy)
        step = 1 if run.total_rows <= LARGE_RUN_ROWS else max(1, min(config.chunk_size, 10))
        logger.info("processing %d row(s) from %s", run.total_rows, source or "<rows>")

        for index, row in enumerate(rows, start=1):
            try:
                stop = self._process_row(row, ordered, loader, stats, state, config, source)
            except (MappingStructureError, DependencyCycleError) as e:
                self.session.rollback()
                logger.error("%s", e)
                self._flush_error_log()
                return run.with_statistics(stats).fail(str(e), e)
            if stop is not None:
                logger.error("%s", stop)
                self._attach_warnings(stats)
                self._flush_error_log()
                failed = run.with_statistics(stats).fail(stop)
                self._progress(failed)
                return failed
            if index % step == 0:
                self._progress(run.with_statistics(stats))

        self._attach_warnings(stats)
        self._flush_error_log()
        done = run.with_statistics(stats).complete()
        self._progress(done)
        logger.info(
            "run %s: imported=%d skipped=%d errors=%d",
            done.status.value,
            done.imported_rows,
            done.skipped_rows,
            done.error_count,
        )
        return done

    def _process_row(
        self,
        row: Row,
        ordered: list[EntityMapping],
        loader: RecordLoader,
        stats: RunStatistics,
        state: _ErrorState,
        config: FlowConfig,
        source: str,
    ) -> str | None:
        """Process one row; returns a stop message when the run must halt."""
        if config.skip_empty_rows and row.is_empty():
            stats.skipped += 1
            stats.empty_rows.append(EmptyRow(row=row.line_number, row_id=row.row_id()))
            return None

        truncations: list[TruncationRecord] = []
        loaded = False
        current: EntityMapping | None = None
        try:
            for mapping in ordered:
                current = mapping
                if mapping.is_association_sync:
                    loaded = loader.pivots.sync(row, mapping, truncations) is not None or loaded
                else:
                    loaded = loader.load(row, mapping, truncations) is not None or loaded
            self.session.commit()
        except (MappingStructureError, DependencyCycleError):
            raise
        except ValidationError as e:
            self.session.rollback()
            stats.skipped += 1
            message = f"Validation failed for row {row.line_number}"
            error = RunError(
                message=message,
                row=row.line_number,
                kind="validation",
                mapping=current.label if current else None,
                context={"errors": e.errors, "data": row.to_dict()},
            )
            return self._on_error(row, e, error, stats, state, source)
        except Exception as e:
            # row boundary: every failure is recorded and handed to the error policy
            self.session.rollback()
            stats.error_count += 1
            error = RunError(
                message=str(e),
                row=row.line_number,
                kind="error",
                mapping=current.label if current else None,
                context={"exception": type(e).__name__, "data": row.to_dict()},
            )
            return self._on_error(row, e, error, stats, state, source)

        if loaded:
            stats.imported += 1
        else:
            stats.skipped += 1
        stats.truncated_fields.extend(truncations)
        return None

    def _on_error(
        self,
        row: Row,
        exc: Exception,
        error: RunError,
        stats: RunStatistics,
        state: _ErrorState,
        source: str,
    ) -> str | None:
        ctx = ErrorContext(
            row_number=row.line_number,
            message=error.message,
            error=exc,
            kind=error.kind,
            mapping=error.mapping,
            row_data=row.to_dict(),
        )
        if ctx.error_class in state.silenced:
            return None
        stats.errors.append(error)
        self._record(source, error.mapping or "", row.line_number, exc)
        logger.debug("row %d: %s", row.line_number, exc)

        decision = ErrorDecision.CONTINUE
        if self.error_decision is not None:
            decision = self.error_decision(ctx)
            if not isinstance(decision, ErrorDecision):
                raise TypeError(f"error decision hook must return ErrorDecision, got {decision!r}")

        if decision is ErrorDecision.STOP:
            return f"Stopped by user at row {row.line_number}: {error.message}"
        if state.force_stop or state.policy is ErrorPolicy.STOP:
            return f"Stopped on error at row {row.line_number}: {error.message}"
        if decision is ErrorDecision.STOP_ON_ERROR:
            state.force_stop = True
        elif decision is ErrorDecision.CONTINUE_SILENT:
            state.silenced.add(ctx.error_class)
        return None

    # reporting

    def _record(self, source: str, mapping: str, row: int, exc: BaseException) -> None:
        if self.error_log is None:
            return
        self.error_log.append(
            ErrorRecord.create(
                source=source,
                mapping=mapping,
                row=row,
                error_type=_upper_snake(type(exc).__name__),
                message=str(exc),
            )
        )

    def _flush_error_log(self) -> None:
        if self.error_log is None:
            return
        try:
            path = self.error_log.flush()
        except OSError as e:
            logger.warning("could not write error log: %s", e)
            return
        if path is not None:
            logger.info("error log written to %s", path)

    def _progress(self, run: FlowRun) -> None:
        if self.on_progress is not None:
            self.on_progress(run)

    @staticmethod
    def _attach_warnings(stats: RunStatistics) -> None:
        if stats.empty_rows:
            shown = [
                f"Row {e.row}" + (f" (ID: {e.row_id})" if e.row_id is not None else "")
                for e in stats.empty_rows[:WARNING_EXAMPLES]
            ]
            stats.warnings.append(
                RunWarning(
                    message=_with_remainder(
                        f"{len(stats.empty_rows)} empty row(s) were skipped during import: ",
                        shown,
                        len(stats.empty_rows),
                    ),
                    context={"empty_rows": len(stats.empty_rows)},
                )
            )
        if stats.truncated_fields:
            shown = [
                f"Row {t.row}, field '{t.field}' ({t.original_length} → {t.max_length} chars)"
                for t in stats.truncated_fields[:WARNING_EXAMPLES]
            ]
            stats.warnings.append(
                RunWarning(
                    message=_with_remainder(
                        f"{len(stats.truncated_fields)} field(s) were truncated because they exceeded "
                        "column maximum length: ",
                        shown,
                        len(stats.truncated_fields),
                    ),
                    context={"truncated_fields": len(stats.truncated_fields)},
                )
            )


def _with_remainder(head: str, shown: list[str], total: int) -> str:
    text = head + ", ".join(shown)
    if total > len(shown):
        text += f" and {total - len(shown)} more"
    return text


def process(
    rows: Iterable[Row],
    definition: MappingDefinition,
    session: Session,
    models: ModelRegistry,
    *,
    source: str = "",
    config: FlowConfig | None = None,
    transform_engine: TransformEngine | None = None,
    error_decision: ErrorDecisionHook | None = None,
    on_progress: ProgressCallback | None = None,
    error_log: ErrorLogBuffer | None = None,
) -> FlowRun:
    """Run ``definition`` over ``rows`` and return the finished FlowRun."""
    executor = FlowExecutor(
        session,
        models,
        transform_engine=transform_engine,
        error_decision=error_decision,
        on_progress=on_progress,
        error_log=error_log,
    )
    return executor.execute(rows, definition, source=source, config=config)
