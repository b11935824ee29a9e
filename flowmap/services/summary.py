from __future__ import annotations

from ..models.flow_run import FlowRun

"""SUMMARY line rendering.

Format::

    SUMMARY source={source} rows={total} imported={n} skipped={n} errors={n}
    status={status} elapsed_sec={elapsed} throughput_rps={throughput}

(one line, space separated). Numbers that are whole print without a decimal
part; tiny values print without scientific notation.
"""

__all__ = [
    "format_number",
    "render_summary_line",
]


def format_number(value: float) -> str:
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return str(value)


def render_summary_line(run: FlowRun, elapsed_seconds: float | None = None) -> str:
    """Render the SUMMARY line for a finished run.

    ``elapsed_seconds`` defaults to the run's own duration. Throughput counts
    processed rows (imported, skipped and failed) per second.
    """
    elapsed = run.duration if elapsed_seconds is None else elapsed_seconds
    elapsed = round(elapsed or 0.0, 3)
    throughput = round(run.processed_rows / elapsed, 2) if elapsed > 0 else 0.0
    source = (run.source or "-").replace(" ", "_")
    return (
        f"SUMMARY source={source} "
        f"rows={run.total_rows} "
        f"imported={run.imported_rows} "
        f"skipped={run.skipped_rows} "
        f"errors={run.error_count} "
        f"status={run.status.value} "
        f"elapsed_sec={format_number(elapsed)} "
        f"throughput_rps={format_number(throughput)}"
    )
