from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

"""Run state models: status machine, statistics accumulator and run result.

``RunStatistics`` is the only object mutated while rows are iterated and is
owned by the flow executor. ``FlowRun`` is an immutable snapshot; every
transition returns a new instance.

State transitions: pending -> running -> (completed | partially_completed | failed)
"""

__all__ = [
    "FlowRunStatus",
    "ErrorDecision",
    "TruncationRecord",
    "EmptyRow",
    "RunError",
    "RunWarning",
    "RunStatistics",
    "ErrorContext",
    "FlowRun",
]


class FlowRunStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            FlowRunStatus.COMPLETED,
            FlowRunStatus.PARTIALLY_COMPLETED,
            FlowRunStatus.FAILED,
        )

    @property
    def is_successful(self) -> bool:
        return self in (FlowRunStatus.COMPLETED, FlowRunStatus.PARTIALLY_COMPLETED)

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()


class ErrorDecision(Enum):
    """Outcome of the per-error decision hook. Closed set."""
    CONTINUE = "continue"
    STOP = "stop"
    STOP_ON_ERROR = "stop_on_error"  # halt on the next error for the rest of the run
    CONTINUE_SILENT = "continue_silent"  # stop reporting this error class, keep going


@dataclass(frozen=True)
class TruncationRecord:
    row: int | None
    field: str
    original_length: int
    max_length: int


@dataclass(frozen=True)
class EmptyRow:
    row: int
    row_id: Any = None


@dataclass(frozen=True)
class RunError:
    message: str
    row: int | None = None
    kind: str = "error"  # "validation" | "error" | "fatal"
    mapping: str | None = None
    context: Mapping[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat().replace("+00:00", "Z"))


@dataclass(frozen=True)
class RunWarning:
    message: str
    context: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class RunStatistics:
    """Mutable accumulator updated once per row by the flow executor."""
    imported: int = 0
    skipped: int = 0
    error_count: int = 0
    empty_rows: list[EmptyRow] = field(default_factory=list)
    truncated_fields: list[TruncationRecord] = field(default_factory=list)
    errors: list[RunError] = field(default_factory=list)
    warnings: list[RunWarning] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.imported + self.skipped + self.error_count


@dataclass(frozen=True)
class ErrorContext:
    """What the error-decision hook sees for one failed row."""
    row_number: int
    message: str
    error: BaseException
    kind: str
    mapping: str | None = None
    row_data: Mapping[str, Any] = field(default_factory=dict)

    @property
    def error_class(self) -> str:
        return type(self.error).__name__


@dataclass(frozen=True)
class FlowRun:
    status: FlowRunStatus
    source: str | None = None
    total_rows: int = 0
    imported_rows: int = 0
    skipped_rows: int = 0
    error_count: int = 0
    errors: tuple[RunError, ...] = ()
    warnings: tuple[RunWarning, ...] = ()
    truncated_fields: tuple[TruncationRecord, ...] = ()
    empty_rows: tuple[EmptyRow, ...] = ()
    progress: float = 0.0
    start_time: datetime | None = None
    end_time: datetime | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @staticmethod
    def create(source: str | None, total_rows: int = 0) -> FlowRun:
        return FlowRun(status=FlowRunStatus.PENDING, source=source, total_rows=total_rows)

    def start(self) -> FlowRun:
        return replace(
            self,
            status=FlowRunStatus.RUNNING,
            start_time=self.start_time or datetime.now(UTC),
        )

    def with_statistics(self, stats: RunStatistics) -> FlowRun:
        total = self.total_rows
        progress = min(100.0, stats.processed / total * 100) if total > 0 else 0.0
        return replace(
            self,
            imported_rows=stats.imported,
            skipped_rows=stats.skipped,
            error_count=stats.error_count,
            errors=tuple(stats.errors),
            warnings=tuple(stats.warnings),
            truncated_fields=tuple(stats.truncated_fields),
            empty_rows=tuple(stats.empty_rows),
            progress=progress,
        )

    def complete(self) -> FlowRun:
        status = (
            FlowRunStatus.PARTIALLY_COMPLETED if self.error_count > 0 else FlowRunStatus.COMPLETED
        )
        return replace(self, status=status, progress=100.0, end_time=datetime.now(UTC))

    def fail(self, message: str, exc: BaseException | None = None) -> FlowRun:
        context: dict[str, Any] = {}
        if exc is not None:
            context["exception"] = f"{type(exc).__name__}: {exc}"
        error = RunError(message=message, kind="fatal", context=context)
        return replace(
            self,
            status=FlowRunStatus.FAILED,
            errors=self.errors + (error,),
            start_time=self.start_time or datetime.now(UTC),
            end_time=datetime.now(UTC),
        )

    @property
    def processed_rows(self) -> int:
        return self.imported_rows + self.skipped_rows + self.error_count

    @property
    def duration(self) -> float | None:
        if self.start_time is None:
            return None
        end = self.end_time or datetime.now(UTC)
        return round((end - self.start_time).total_seconds(), 3)

    @property
    def success_rate(self) -> float:
        if self.total_rows == 0:
            return 0.0
        return round(self.imported_rows / self.total_rows * 100, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "source": self.source,
            "total_rows": self.total_rows,
            "imported_rows": self.imported_rows,
            "skipped_rows": self.skipped_rows,
            "error_count": self.error_count,
            "errors": [
                {
                    "message": e.message,
                    "row": e.row,
                    "kind": e.kind,
                    "mapping": e.mapping,
                    "context": dict(e.context),
                    "timestamp": e.timestamp,
                }
                for e in self.errors
            ],
            "warnings": [w.message for w in self.warnings],
            "truncated_fields": [asdict(t) for t in self.truncated_fields],
            "progress": self.progress,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration": self.duration,
            "success_rate": self.success_rate,
            "metadata": dict(self.metadata),
        }
