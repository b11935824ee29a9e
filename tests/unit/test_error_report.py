from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from flowmap.models.flow_run import FlowRun, FlowRunStatus, RunError
from flowmap.models.mapping import (
    ColumnMapping,
    DuplicateStrategy,
    EntityMapping,
    MappingDefinition,
    MappingOptions,
)
from flowmap.services.error_report import (
    ErrorReportGenerator,
    validation_error_type,
    validation_suggestion,
)

"""Unit tests for the plain-text error report."""


def _definition() -> MappingDefinition:
    return MappingDefinition(
        name="books",
        mappings=(
            EntityMapping(
                model="Book",
                execution_order=1,
                columns=(
                    ColumnMapping(source="isbn", target="isbn"),
                    ColumnMapping(source="title", target="title", transforms=("trim", "truncate:30")),
                ),
                options=MappingOptions(unique_key=("isbn",), duplicate_strategy=DuplicateStrategy.UPDATE),
            ),
        ),
    )


def _run(errors: tuple[RunError, ...], *, error_count: int, skipped: int = 0) -> FlowRun:
    start = datetime(2024, 1, 1, 10, 0, 0, tzinfo=UTC)
    return FlowRun(
        status=FlowRunStatus.PARTIALLY_COMPLETED if errors else FlowRunStatus.COMPLETED,
        source="data/books.csv",
        total_rows=4,
        imported_rows=4 - error_count - skipped,
        skipped_rows=skipped,
        error_count=error_count,
        errors=errors,
        start_time=start,
        end_time=datetime(2024, 1, 1, 10, 0, 2, tzinfo=UTC),
    )


def test_no_report_for_clean_run(tmp_path: Path):
    generator = ErrorReportGenerator(directory=tmp_path)
    assert generator.generate(_run((), error_count=0), "data/books.csv") is None
    assert list(tmp_path.iterdir()) == []


def test_report_sections(tmp_path: Path):
    errors = (
        RunError(
            message="(sqlite3.IntegrityError) NOT NULL constraint failed: books.author_id",
            row=2,
            mapping="Book",
            context={"exception": "IntegrityError", "data": {"isbn": "111", "author": None}},
        ),
        RunError(
            message="Validation failed for row 3",
            row=3,
            kind="validation",
            mapping="Book",
            context={
                "errors": {"email": ["The email field must be a valid email address."]},
                "data": {"email": "nope"},
            },
        ),
    )
    path = ErrorReportGenerator(directory=tmp_path).generate(
        _run(errors, error_count=1, skipped=1), "data/books.csv", _definition()
    )
    assert path is not None
    assert path.parent == tmp_path
    assert path.name.startswith("error-report_books_")
    text = path.read_text(encoding="utf-8")
    assert "FLOWMAP ERROR REPORT" in text
    assert "Source File: data/books.csv" in text
    assert "Target Model: Book" in text
    assert "Status: Partially Completed" in text
    assert "Total Rows: 4" in text
    assert "Success Rate: 50.00%" in text
    assert "Duration: 2.00s" in text
    assert "ERROR TYPE SUMMARY" in text
    assert "[Error #1] Relation 'author' returned NULL" in text
    assert "[Error #2] Invalid email format (email)" in text
    assert "  • email: The email field must be a valid email address." in text
    assert "Suggested Solutions:" in text
    assert "  - author: <null>" in text
    assert "Unique Key: isbn" in text
    assert "On Duplicate: update" in text
    assert "  - title → title [trim, truncate:30]" in text
    assert text.rstrip().endswith("=" * 80)
    assert "END OF REPORT" in text


def test_validation_error_type_labels():
    assert validation_error_type({"name": ["The name field is required."]}) == "Missing required field (name)"
    assert (
        validation_error_type({"name": ["The name field must not be greater than 5 characters."]})
        == "Field length too long (name)"
    )
    combined = validation_error_type(
        {"name": ["The name field is required."], "age": ["The age field must be an integer."]}
    )
    assert combined == "Multiple validation errors (Missing required field (name), Invalid numeric value (age))"


def test_validation_suggestions():
    assert "truncate:5" in validation_suggestion(
        "name", "The name field must not be greater than 5 characters.", "abcdefg"
    )
    assert "is empty" in validation_suggestion("name", "The name field must be at least 3 characters.", "")
    assert "cast:bool" in validation_suggestion("active", "The active field must be true or false.", "maybe")
    assert validation_suggestion("name", "Something unexpected", "x") is None
