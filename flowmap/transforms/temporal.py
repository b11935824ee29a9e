from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from typing import Any

import pandas as pd

from .engine import TransformContext, TransformFactory, TransformFn, TransformKey

"""Date and time transforms.

Formats use ``strftime`` / ``strptime`` directives. Free-form input (for
``date_format`` and ``timestamp``) is parsed with ``pandas.to_datetime``.
A value that cannot be parsed is returned unchanged and logged at DEBUG.
"""

__all__ = [
    "FACTORIES",
    "DEFAULT_INPUT_FORMAT",
    "DEFAULT_OUTPUT_FORMAT",
    "to_datetime",
]

logger = logging.getLogger(__name__)

DEFAULT_INPUT_FORMAT = "%d/%m/%Y"
DEFAULT_OUTPUT_FORMAT = "%Y-%m-%d"


def to_datetime(value: Any) -> datetime:
    """Parse anything date-like into a ``datetime``; raises ValueError when impossible."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        parsed = pd.to_datetime(value)
    except (TypeError, OverflowError) as e:
        raise ValueError(str(e)) from e
    if pd.isna(parsed):
        raise ValueError(f"not a date: {value!r}")
    return parsed.to_pydatetime()


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _parse_date_factory(key: TransformKey) -> TransformFn:
    fmt = key.param if key.param else DEFAULT_INPUT_FORMAT

    def apply(value: Any, _ctx: TransformContext) -> Any:
        if _blank(value) or not isinstance(value, str):
            return value
        try:
            return datetime.strptime(value.strip(), fmt)
        except ValueError:
            logger.debug("parse_date: '%s' does not match format '%s'", value, fmt)
            return value
    return apply


def _date_format_factory(key: TransformKey) -> TransformFn:
    fmt = key.param if key.param else DEFAULT_OUTPUT_FORMAT

    def apply(value: Any, _ctx: TransformContext) -> Any:
        if _blank(value):
            return value
        try:
            return to_datetime(value).strftime(fmt)
        except ValueError:
            logger.debug("date_format: cannot parse '%s'", value)
            return value
    return apply


def _timestamp_factory(_key: TransformKey) -> TransformFn:
    def apply(value: Any, _ctx: TransformContext) -> Any:
        if _blank(value):
            return value
        try:
            moment = to_datetime(value)
        except ValueError:
            logger.debug("timestamp: cannot parse '%s'", value)
            return value
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        return int(moment.timestamp())
    return apply


FACTORIES: dict[str, TransformFactory] = {
    "parse_date": _parse_date_factory,
    "date_format": _date_format_factory,
    "timestamp": _timestamp_factory,
}
