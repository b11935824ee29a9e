from __future__ import annotations

import sys
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

from ..models.flow_run import FlowRun

"""Row progress display with tqdm (TTY only).

The flow executor hands a FlowRun snapshot to its progress callback;
``ProgressTracker.update`` moves a single tqdm bar to its processed count. In
non-TTY environments (CI, redirected output) no bar is created, so log lines
are not interleaved with control sequences.
"""

__all__ = [
    "ProgressTracker",
    "is_tty_enabled",
]


def is_tty_enabled() -> bool:
    return sys.stdout.isatty()


class ProgressTracker:
    def __init__(
        self,
        total_rows: int,
        *,
        description: str = "Importing rows",
        enabled: bool | None = None,
    ) -> None:
        self.total_rows = total_rows
        self.description = description
        self.position = 0
        self.enabled = is_tty_enabled() if enabled is None else enabled
        self.pbar: TqdmType[Any] | None = None
        if self.enabled:
            self.pbar = tqdm(
                total=total_rows,
                desc=description,
                unit="row",
                leave=True,
                position=0,
                ncols=80,
                ascii=True,
            )

    def update(self, run: FlowRun) -> None:
        """Move the bar to the run's processed count; reports may skip rows but never go back."""
        step = run.processed_rows - self.position
        if step <= 0:
            return
        self.position = run.processed_rows
        if self.pbar is not None:
            self.pbar.update(step)
            self.pbar.set_postfix(imported=run.imported_rows, errors=run.error_count)

    def close(self) -> None:
        if self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> ProgressTracker:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
