from __future__ import annotations

import hashlib
import json
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any

from .engine import (
    TransformContext,
    TransformFactory,
    TransformFn,
    TransformKey,
    is_quoted,
    split_arguments,
    unquote,
)
from .temporal import to_datetime

"""Utility transforms: casting, defaults, hashing, decoding and cross-field helpers.

``coalesce`` and ``concat`` read other fields of the current row through the
transform context, so they can be used as the first step of a chain whose
own source column is empty.
"""

__all__ = [
    "FACTORIES",
    "TRUE_TOKENS",
    "FALSE_TOKENS",
    "cast_value",
]

logger = logging.getLogger(__name__)

TRUE_TOKENS = frozenset({"true", "yes", "y", "1", "on"})
FALSE_TOKENS = frozenset({"false", "no", "n", "0", "off"})
HASH_ALGORITHMS = ("md5", "sha1", "sha256", "sha512")
CAST_TYPES = ("int", "integer", "float", "double", "bool", "boolean", "string", "str",
              "date", "datetime", "decimal")


def _empty(value: Any) -> bool:
    return value is None or value == ""


def _blank(value: Any) -> bool:
    return _empty(value) or (isinstance(value, str) and value.strip() == "")


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        token = value.strip().lower()
        if token in TRUE_TOKENS:
            return True
        if token in FALSE_TOKENS:
            return False
    return bool(value)


def cast_value(value: Any, type_name: str) -> Any:
    """Cast ``value``; None / '' become None. An impossible cast leaves the value as is
    (dates become None)."""
    if _empty(value):
        return None
    kind = type_name.strip().lower()
    try:
        if kind in ("int", "integer"):
            if isinstance(value, str):
                text = value.strip()
                return int(text) if text.lstrip("+-").isdigit() else int(float(text))
            return int(value)
        if kind in ("float", "double"):
            return float(value)
        if kind in ("bool", "boolean"):
            return _to_bool(value)
        if kind in ("string", "str"):
            return str(value)
        if kind == "decimal":
            return Decimal(str(value).strip())
    except (ValueError, TypeError, OverflowError, InvalidOperation):
        logger.debug("cast:%s failed for %r", kind, value)
        return value
    if kind in ("date", "datetime"):
        try:
            moment = to_datetime(value)
        except ValueError:
            logger.debug("cast:%s failed for %r", kind, value)
            return None
        return moment.date() if kind == "date" else moment
    return value


def _cast_factory(key: TransformKey) -> TransformFn:
    type_name = (key.param or "").strip().lower()
    if type_name not in CAST_TYPES:
        raise ValueError(f"unsupported cast type '{type_name}'")
    return lambda value, _ctx: cast_value(value, type_name)


def _default_factory(key: TransformKey) -> TransformFn:
    fallback = key.param if key.param is not None else ""
    return lambda value, _ctx: fallback if _empty(value) else value


def _null_if_empty(_key: TransformKey) -> TransformFn:
    return lambda value, _ctx: None if _blank(value) else value


def _hash_factory(key: TransformKey) -> TransformFn:
    algorithm = (key.param or "sha256").strip().lower()
    if algorithm not in HASH_ALGORITHMS:
        raise ValueError(f"unsupported hash algorithm '{algorithm}'")

    def apply(value: Any, _ctx: TransformContext) -> Any:
        if _empty(value):
            return None
        return hashlib.new(algorithm, str(value).encode("utf-8")).hexdigest()
    return apply


def _json_decode(_key: TransformKey) -> TransformFn:
    def apply(value: Any, _ctx: TransformContext) -> Any:
        if not isinstance(value, str):
            return value
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return apply


def _split_factory(key: TransformKey) -> TransformFn:
    delimiter = key.param if key.param else ","
    delimiter = delimiter.replace("\\t", "\t")

    def apply(value: Any, _ctx: TransformContext) -> Any:
        if not isinstance(value, str):
            return value
        return [part.strip() for part in value.split(delimiter) if part.strip()]
    return apply


def _coalesce_factory(key: TransformKey) -> TransformFn:
    # coalesce:literal  |  coalesce(fieldA, fieldB, "literal")
    if key.args is None:
        candidates: tuple[str, ...] = ('"' + (key.param or "") + '"',)
    else:
        candidates = tuple(key.args)

    def apply(value: Any, ctx: TransformContext) -> Any:
        if not _blank(value):
            return value
        for arg in candidates:
            candidate = unquote(arg) if is_quoted(arg) else ctx.row.get(arg)
            if not _blank(candidate):
                return candidate
        return value
    return apply


def _concat_factory(key: TransformKey) -> TransformFn:
    if not key.args:
        raise ValueError("concat needs at least one field")
    fields = [a for a in key.args if not is_quoted(a)]
    separators = [unquote(a) for a in key.args if is_quoted(a)]
    separator = separators[-1] if separators else " "

    def apply(value: Any, ctx: TransformContext) -> Any:
        parts = [ctx.row.get(f) for f in fields]
        return separator.join(str(p) for p in parts if not _empty(p))
    return apply


_DELIMITED_RE = re.compile(r"^/(?P<body>.*)/(?P<flags>[A-Za-z]*)$", re.DOTALL)
_FLAG_BITS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE, "u": 0, "g": 0}


def _compile_pattern(pattern: str) -> re.Pattern[str]:
    text = unquote(pattern.strip())
    m = _DELIMITED_RE.match(text)
    if m is None:
        return re.compile(text)
    flags = 0
    for ch in m.group("flags").lower():
        if ch not in _FLAG_BITS:
            raise ValueError(f"unsupported regex flag '{ch}'")
        flags |= _FLAG_BITS[ch]
    return re.compile(m.group("body"), flags)


def _regex_replace_factory(key: TransformKey) -> TransformFn:
    if key.args is None or len(key.args) < 2:
        raise ValueError("regex_replace needs a pattern and a replacement")
    try:
        pattern = _compile_pattern(key.args[0])
    except re.error as e:
        raise ValueError(f"invalid pattern: {e}") from e
    replacement = re.sub(r"\$(\d+)", r"\\\1", unquote(key.args[1].strip()))

    def apply(value: Any, _ctx: TransformContext) -> Any:
        if not isinstance(value, str):
            return value
        return pattern.sub(replacement, value)
    return apply


FACTORIES: dict[str, TransformFactory] = {
    "cast": _cast_factory,
    "default": _default_factory,
    "null_if_empty": _null_if_empty,
    "hash": _hash_factory,
    "json_decode": _json_decode,
    "split": _split_factory,
    "coalesce": _coalesce_factory,
    "concat": _concat_factory,
    "regex_replace": _regex_replace_factory,
}
