from __future__ import annotations

import re
import unicodedata
from collections.abc import Callable
from typing import Any

from .engine import TransformContext, TransformFactory, TransformFn, TransformKey

"""String transforms. Non-string values pass through untouched."""

__all__ = [
    "FACTORIES",
    "slugify",
    "snake_case",
    "camel_case",
    "strip_tags",
    "clean_whitespace",
    "normalize_multiline",
    "truncate",
]

_TAG_RE = re.compile(r"<[^>]*>")
_WORD_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_NON_WORD_RE = re.compile(r"[^A-Za-z0-9]+")


def _words(value: str) -> list[str]:
    spaced = _WORD_BOUNDARY_RE.sub(" ", value)
    return [w for w in _NON_WORD_RE.split(spaced) if w]


def slugify(value: str, separator: str = "-") -> str:
    ascii_text = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    return separator.join(w.lower() for w in _NON_WORD_RE.split(ascii_text) if w)


def snake_case(value: str) -> str:
    return "_".join(w.lower() for w in _words(value))


def camel_case(value: str) -> str:
    words = _words(value)
    if not words:
        return ""
    return words[0].lower() + "".join(w[:1].upper() + w[1:].lower() for w in words[1:])


def strip_tags(value: str) -> str:
    return _TAG_RE.sub("", value)


def clean_whitespace(value: str) -> str:
    return " ".join(value.split())


def normalize_multiline(value: str) -> str:
    """Unify line endings, collapse runs of spaces per line, keep at most one blank line."""
    text = value.replace("\r\n", "\n").replace("\r", "\n").replace("\t", " ")
    lines = [re.sub(r"\s{2,}", " ", line).strip() for line in text.split("\n")]
    text = re.sub(r"\n{3,}", "\n\n", "\n".join(lines))
    return text.strip()


def truncate(value: str, length: int, end: str = "") -> str:
    if len(value) <= length:
        return value
    if end and len(end) < length:
        return value[: length - len(end)] + end
    return value[:length]


def _str_only(fn: Callable[[str], Any]) -> TransformFactory:
    def factory(_key: TransformKey) -> TransformFn:
        def apply(value: Any, _ctx: TransformContext) -> Any:
            return fn(value) if isinstance(value, str) else value
        return apply
    return factory


def _truncate_factory(key: TransformKey) -> TransformFn:
    length_text, _, end = (key.param or "").partition(":")
    length = int(length_text) if length_text.strip() else 255
    if length < 1:
        raise ValueError("length must be positive")

    def apply(value: Any, ctx: TransformContext) -> Any:
        if not isinstance(value, str) or len(value) <= length:
            return value
        ctx.record_truncation(len(value), length)
        return truncate(value, length, end)
    return apply


def _affix_factory(prepend: bool) -> TransformFactory:
    def factory(key: TransformKey) -> TransformFn:
        affix = key.param or ""

        def apply(value: Any, _ctx: TransformContext) -> Any:
            if value is None or value == "" or isinstance(value, (bool, list, dict)):
                return value
            if not isinstance(value, (str, int, float)):
                return value
            return f"{affix}{value}" if prepend else f"{value}{affix}"
        return apply
    return factory


FACTORIES: dict[str, TransformFactory] = {
    "trim": _str_only(str.strip),
    "upper": _str_only(str.upper),
    "lower": _str_only(str.lower),
    "capitalize": _str_only(str.capitalize),
    "title": _str_only(str.title),
    "slugify": _str_only(slugify),
    "snake_case": _str_only(snake_case),
    "camel_case": _str_only(camel_case),
    "strip_tags": _str_only(strip_tags),
    "clean_whitespace": _str_only(clean_whitespace),
    "normalize_multiline": _str_only(normalize_multiline),
    "truncate": _truncate_factory,
    "prefix": _affix_factory(prepend=True),
    "suffix": _affix_factory(prepend=False),
}
