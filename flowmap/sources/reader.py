from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import pandas as pd

from ..errors import FlowmapError
from ..models.row import Row

"""Source file reading.

Every format goes through pandas and comes out as a list of ``Row`` objects
with 1-based line numbers counted over data records (the header is not a
record). Missing cells (NaN/NaT) become None. JSON keeps nested arrays and
objects as Python lists/dicts so ``*`` target paths can iterate them.

Supported extensions: .csv, .tsv, .txt (tab or comma sniffed), .xlsx/.xlsm/.xls,
.json (array of objects), .jsonl/.ndjson (one object per line).
"""

__all__ = [
    "SourceReadError",
    "read_source",
    "read_frame",
    "frame_to_rows",
    "SUPPORTED_EXTENSIONS",
]

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".csv", ".tsv", ".txt", ".xlsx", ".xlsm", ".xls", ".json", ".jsonl", ".ndjson")


class SourceReadError(FlowmapError):
    """The source file is missing, unsupported or unreadable."""


def _na_options(keep_na_strings: Iterable[str] | None) -> dict[str, Any]:
    if not keep_na_strings:
        return {}
    # pandas turns 'NA', 'NULL', 'N/A' ... into NaN by default; keep the listed ones as text
    import pandas._libs.parsers as parsers

    na_values = sorted(set(parsers.STR_NA_VALUES) - set(keep_na_strings))
    return {"keep_default_na": False, "na_values": na_values}


def read_frame(
    path: Path,
    *,
    sheet: str | int | None = None,
    keep_na_strings: Iterable[str] | None = None,
) -> pd.DataFrame:
    """Read ``path`` into a DataFrame of object columns (no type inference on CSV)."""
    suffix = path.suffix.lower()
    if suffix in (".csv", ".tsv", ".txt"):
        sep: str | None = "\t" if suffix == ".tsv" else ("," if suffix == ".csv" else None)
        return pd.read_csv(
            path,
            sep=sep,
            dtype=str,
            engine="python" if sep is None else "c",
            encoding="utf-8-sig",
            **_na_options(keep_na_strings),
        )
    if suffix in (".xlsx", ".xlsm", ".xls"):
        return pd.read_excel(
            path,
            sheet_name=0 if sheet is None else sheet,
            dtype=object,
            **_na_options(keep_na_strings),
        )
    if suffix == ".json":
        return pd.read_json(path, orient="records", dtype=False, convert_dates=False)
    if suffix in (".jsonl", ".ndjson"):
        return pd.read_json(path, lines=True, dtype=False, convert_dates=False)
    raise SourceReadError(
        f"unsupported source format '{suffix or path.name}' (expected one of {', '.join(SUPPORTED_EXTENSIONS)})"
    )


def _clean(value: Any) -> Any:
    if isinstance(value, (list, dict)):
        return value
    if pd.isna(value):
        return None
    return value


def frame_to_rows(df: pd.DataFrame) -> list[Row]:
    columns = [str(c).strip() for c in df.columns]
    df = df.astype(object)
    rows: list[Row] = []
    for line_number, record in enumerate(df.to_dict(orient="records"), start=1):
        fields = {col: _clean(val) for col, val in zip(columns, record.values(), strict=False)}
        rows.append(Row(fields=fields, line_number=line_number))
    return rows


def read_source(
    path: Path | str,
    *,
    sheet: str | int | None = None,
    keep_na_strings: Iterable[str] | None = None,
) -> list[Row]:
    """Read a source file into rows.

    Raises
    ------
    SourceReadError: the file does not exist, has an unsupported extension, or
        pandas could not parse it.
    """
    path = Path(path)
    if not path.exists():
        raise SourceReadError(f"source file not found: {path}")
    try:
        df = read_frame(path, sheet=sheet, keep_na_strings=keep_na_strings)
    except SourceReadError:
        raise
    except (ValueError, OSError) as e:
        # pandas parser errors (ParserError, EmptyDataError) are ValueErrors
        raise SourceReadError(f"cannot read {path.name}: {e}") from e
    rows = frame_to_rows(df)
    logger.debug("read %d row(s) and %d column(s) from %s", len(rows), len(df.columns), path)
    return rows
