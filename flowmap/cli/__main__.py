from __future__ import annotations

import argparse
import importlib
import sys
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError

from flowmap.config.loader import load_mapping
from flowmap.db.session import (
    DatabaseConfigError,
    create_session_factory,
    load_env_file,
    resolve_database_url,
    session_scope,
)
from flowmap.errors import FlowmapError, MappingStructureError
from flowmap.logging.error_log import ErrorLogBuffer
from flowmap.logging.init import log_summary, set_debug, setup_logging
from flowmap.models.flow_run import ErrorContext, ErrorDecision, FlowRun, FlowRunStatus
from flowmap.models.mapping import ErrorPolicy
from flowmap.services.error_report import ErrorReportGenerator
from flowmap.services.flow_executor import ErrorDecisionHook, FlowExecutor
from flowmap.services.progress import ProgressTracker
from flowmap.services.relation_types import ModelRegistry
from flowmap.services.summary import render_summary_line
from flowmap.sources.reader import SourceReadError, read_source
from flowmap.transforms.interactive import console_prompter

"""CLI entrypoint.

    flowmap SOURCE --mapping mapping.yml --models app.models [options]

Flow: load ``.env`` -> parse the mapping (bare interactive transforms are
asked for with ``--interactive``, otherwise their defaults apply) -> read the
source -> connect -> run the flow executor -> write the error log and report
-> emit the SUMMARY line.

Exit codes: 0 completed, 2 partially completed, 1 failed or fatal startup
error (bad mapping, dependency cycle, unreadable source, no database).
"""

EXIT_SUCCESS = 0
EXIT_PARTIAL = 2
EXIT_FATAL = 1

_DECISION_KEYS = {
    "c": ErrorDecision.CONTINUE,
    "s": ErrorDecision.STOP,
    "e": ErrorDecision.STOP_ON_ERROR,
    "q": ErrorDecision.CONTINUE_SILENT,
}


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="flowmap", description="Load tabular rows into a graph of entities")
    p.add_argument("source", type=Path, help="CSV/TSV, XLSX or JSON/JSON Lines source file")
    p.add_argument("-m", "--mapping", type=Path, required=True, help="Mapping document (YAML or JSON)")
    p.add_argument("--models", required=True, help="Module exposing the declarative Base (e.g. app.models)")
    p.add_argument("--database-url", help="SQLAlchemy URL (DATABASE_URL in the environment wins)")
    p.add_argument("--sheet", help="Sheet name for spreadsheet sources (default: first sheet)")
    p.add_argument("--chunk-size", type=int, help="Progress reporting chunk size (1..100000)")
    p.add_argument("--error-policy", choices=[e.value for e in ErrorPolicy], help="Override flow_config.error_policy")
    p.add_argument("--keep-empty-rows", action="store_true", help="Process rows with no values instead of skipping them")
    p.add_argument("--no-truncate", action="store_true", help="Fail rows whose values exceed column length")
    p.add_argument("--create-tables", action="store_true", help="Create missing tables from the models before loading")
    p.add_argument("--interactive", action="store_true", help="Prompt for transform parameters and on every row error")
    p.add_argument("--log-dir", type=Path, help="Directory for the JSON Lines error log (default: ./logs)")
    p.add_argument("--report-dir", type=Path, help="Directory for the error report (default: ./reports)")
    p.add_argument("--no-report", action="store_true", help="Do not write the plain-text error report")
    p.add_argument("--inspect-data", action="store_true", help="Print source columns and first rows then exit")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = p.parse_args(argv)
    if args.chunk_size is not None and not 1 <= args.chunk_size <= 100000:
        p.error("--chunk-size must be between 1 and 100000")
    return args


def _inspect_data(source: Path, sheet: str | None) -> int:
    try:
        rows = read_source(source, sheet=sheet)
    except SourceReadError as e:
        print(f"inspect: {e}")
        return EXIT_FATAL
    columns = list(rows[0].fields) if rows else []
    print(f"FILE: {source.name} rows={len(rows)} cols={columns}")
    for row in rows[:3]:
        safe = {k: (v.isoformat() if hasattr(v, "isoformat") else v) for k, v in row.fields.items()}
        print(f"  row {row.line_number}: {safe}")
    return EXIT_SUCCESS


def console_error_decision(ctx: ErrorContext) -> ErrorDecision:
    """Ask on stdin what to do after a row error; EOF or an unknown answer continues."""
    print(f"Row {ctx.row_number} failed ({ctx.error_class}): {ctx.message}")
    try:
        answer = input("[c]ontinue, [s]top, stop on next [e]rror, continue [q]uietly for this error type? ")
    except EOFError:
        return ErrorDecision.CONTINUE
    return _DECISION_KEYS.get(answer.strip().lower()[:1], ErrorDecision.CONTINUE)


def exit_code_for(run: FlowRun) -> int:
    if run.status is FlowRunStatus.COMPLETED:
        return EXIT_SUCCESS
    if run.status is FlowRunStatus.PARTIALLY_COMPLETED:
        return EXIT_PARTIAL
    return EXIT_FATAL


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # [] from tests must not fall back to sys.argv
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    if args.debug:
        set_debug(logger)
        logger.debug("debug mode enabled")

    if args.inspect_data:
        return _inspect_data(args.source, args.sheet)

    load_env_file(Path(".env"), override=True)

    try:
        definition = load_mapping(args.mapping, prompter=console_prompter if args.interactive else None)
        module = importlib.import_module(args.models)
        models = ModelRegistry.from_module(args.models)
    except MappingStructureError as e:
        logger.error("mapping: %s", e)
        return EXIT_FATAL
    except ImportError as e:
        logger.error("models: cannot import %s: %s", args.models, e)
        return EXIT_FATAL

    try:
        rows = read_source(args.source, sheet=args.sheet)
    except SourceReadError as e:
        logger.error("source: %s", e)
        return EXIT_FATAL

    try:
        url = resolve_database_url(args.database_url)
    except DatabaseConfigError as e:
        logger.error("database: %s", e)
        return EXIT_FATAL

    config = definition.flow_config.with_overrides(
        chunk_size=args.chunk_size,
        error_policy=ErrorPolicy(args.error_policy) if args.error_policy else None,
        skip_empty_rows=False if args.keep_empty_rows else None,
        truncate_long_fields=False if args.no_truncate else None,
    )
    decision: ErrorDecisionHook | None = console_error_decision if args.interactive else None
    error_log = ErrorLogBuffer(args.log_dir)
    source = str(args.source)
    logger.info("Importing %s with mapping '%s' (%d row(s))", args.source.name, definition.name, len(rows))

    try:
        engine = create_engine(url)
        if args.create_tables:
            module.Base.metadata.create_all(engine)
        factory = create_session_factory(engine)
        with session_scope(factory) as session, ProgressTracker(len(rows)) as progress:
            executor = FlowExecutor(
                session,
                models,
                error_decision=decision,
                on_progress=progress.update,
                error_log=error_log,
            )
            run = executor.execute(rows, definition, source=source, config=config)
    except SQLAlchemyError as e:
        logger.error("database: %s", e)
        return EXIT_FATAL
    except FlowmapError as e:
        logger.error("%s", e)
        return EXIT_FATAL

    for warning in run.warnings:
        logger.warning("%s", warning.message)
    for error in run.errors:
        if error.kind == "fatal":
            logger.error("%s", error.message)

    if not args.no_report:
        try:
            ErrorReportGenerator(directory=args.report_dir).generate(run, source, definition)
        except OSError as e:
            logger.warning("could not write error report: %s", e)

    # log_summary adds the "SUMMARY " label itself
    log_summary(render_summary_line(run)[len("SUMMARY "):])
    return exit_code_for(run)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
