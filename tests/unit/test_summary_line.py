from __future__ import annotations

import re
from datetime import UTC, datetime

from flowmap.models.flow_run import FlowRun, FlowRunStatus
from flowmap.services.summary import format_number, render_summary_line

"""Unit tests for SUMMARY line rendering."""

SUMMARY_PATTERN = re.compile(
    r"^SUMMARY source=(\S+) rows=([0-9]+) imported=([0-9]+) skipped=([0-9]+) errors=([0-9]+) "
    r"status=(completed|partially_completed|failed) elapsed_sec=([0-9]+\.?[0-9]*) "
    r"throughput_rps=([0-9]+\.?[0-9]*)$"
)


def _run(**overrides) -> FlowRun:
    values = dict(
        status=FlowRunStatus.COMPLETED,
        source="data/books.csv",
        total_rows=4,
        imported_rows=4,
        start_time=datetime(2024, 1, 1, 10, 0, 0, tzinfo=UTC),
        end_time=datetime(2024, 1, 1, 10, 0, 2, tzinfo=UTC),
    )
    values.update(overrides)
    return FlowRun(**values)


def test_completed_run():
    line = render_summary_line(_run())
    m = SUMMARY_PATTERN.match(line)
    assert m, line
    assert line == (
        "SUMMARY source=data/books.csv rows=4 imported=4 skipped=0 errors=0 "
        "status=completed elapsed_sec=2 throughput_rps=2"
    )


def test_partial_run_counts_every_processed_row():
    run = _run(status=FlowRunStatus.PARTIALLY_COMPLETED, imported_rows=2, skipped_rows=1, error_count=1)
    line = render_summary_line(run, elapsed_seconds=0.84)
    m = SUMMARY_PATTERN.match(line)
    assert m, line
    assert m.group(6) == "partially_completed"
    assert m.group(7) == "0.84"
    assert m.group(8) == "4.76"


def test_zero_elapsed_and_missing_source():
    line = render_summary_line(_run(source=None, total_rows=0, imported_rows=0), elapsed_seconds=0)
    assert line.startswith("SUMMARY source=- rows=0 ")
    assert line.endswith("elapsed_sec=0 throughput_rps=0")


def test_spaces_in_source_are_replaced():
    line = render_summary_line(_run(source="my data/books 2024.csv"))
    assert "source=my_data/books_2024.csv " in line
    assert SUMMARY_PATTERN.match(line)


def test_format_number():
    assert format_number(0) == "0"
    assert format_number(3.0) == "3"
    assert format_number(4761.9) == "4761.9"
    assert format_number(0.001) == "0.001"
