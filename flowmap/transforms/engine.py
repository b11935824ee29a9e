from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from ..errors import MappingStructureError
from ..models.flow_run import TruncationRecord

"""Transform chain compilation and application.

A transform key is either ``name``, ``name:param`` (everything after the
first colon is handed to the factory unparsed, since date formats contain
colons) or ``name(arg, "literal", ...)``. Factories turn a parsed key into a
callable ``(value, context) -> value``. Chains are compiled once per distinct
key tuple and applied strictly left to right.
"""

__all__ = [
    "TransformKey",
    "TransformContext",
    "TransformFn",
    "TransformFactory",
    "TransformEngine",
    "parse_transform_key",
    "split_arguments",
    "unquote",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransformKey:
    raw: str
    name: str
    param: str | None = None  # text after the first ':'
    args: tuple[str, ...] | None = None  # call-form arguments, quotes preserved


@dataclass
class TransformContext:
    """Row-level context handed to every transform of a chain."""
    row: Mapping[str, Any] = field(default_factory=dict)
    line_number: int | None = None
    field: str | None = None
    truncations: list[TruncationRecord] | None = None

    def record_truncation(self, original_length: int, max_length: int) -> None:
        if self.truncations is None:
            return
        self.truncations.append(
            TruncationRecord(
                row=self.line_number,
                field=self.field or "",
                original_length=original_length,
                max_length=max_length,
            )
        )


TransformFn = Callable[[Any, TransformContext], Any]
TransformFactory = Callable[[TransformKey], TransformFn]


def split_arguments(text: str) -> list[str]:
    """Split ``a, "b, c", d`` on top-level commas; quotes are kept on the pieces."""
    parts: list[str] = []
    buf: list[str] = []
    quote: str | None = None
    for ch in text:
        if quote is not None:
            buf.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in ('"', "'"):
            quote = ch
            buf.append(ch)
        elif ch == ",":
            parts.append("".join(buf).strip())
            buf = []
        else:
            buf.append(ch)
    tail = "".join(buf).strip()
    if tail or parts:
        parts.append(tail)
    return parts


def is_quoted(arg: str) -> bool:
    return len(arg) >= 2 and arg[0] == arg[-1] and arg[0] in ('"', "'")


def unquote(arg: str) -> str:
    return arg[1:-1] if is_quoted(arg) else arg


def parse_transform_key(key: str) -> TransformKey:
    if not isinstance(key, str) or not key.strip():
        raise MappingStructureError("Unknown transform: empty transform key")
    text = key.strip()
    paren = text.find("(")
    colon = text.find(":")
    if paren > 0 and text.endswith(")") and (colon < 0 or paren < colon):
        name = text[:paren].strip()
        return TransformKey(raw=text, name=name, args=tuple(split_arguments(text[paren + 1:-1])))
    if colon > 0:
        return TransformKey(raw=text, name=text[:colon].strip(), param=text[colon + 1:])
    return TransformKey(raw=text, name=text)


def _builtin_factories() -> dict[str, TransformFactory]:
    from . import numeric, temporal, text, utility

    factories: dict[str, TransformFactory] = {}
    for module in (text, numeric, temporal, utility):
        factories.update(module.FACTORIES)
    return factories


class TransformEngine:
    """Registry of transform factories plus a per-chain compile cache.

    Unknown keys raise MappingStructureError from ``compile``; the config
    loader calls ``validate`` on every chain so that happens at load time.
    """

    def __init__(self, factories: Mapping[str, TransformFactory] | None = None) -> None:
        self._factories: dict[str, TransformFactory] = _builtin_factories()
        if factories:
            self._factories.update(factories)
        self._compiled: dict[tuple[str, ...], tuple[TransformFn, ...]] = {}

    def register(self, name: str, factory: TransformFactory) -> None:
        """Register (or override) a transform by key name."""
        self._factories[name] = factory
        self._compiled.clear()

    def register_simple(self, name: str, fn: Callable[[Any], Any]) -> None:
        """Register a parameterless value -> value function."""
        self.register(name, lambda _key: (lambda value, _ctx: fn(value)))

    def names(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, name: str) -> bool:
        return name in self._factories

    def build(self, key: str) -> TransformFn:
        parsed = parse_transform_key(key)
        factory = self._factories.get(parsed.name)
        if factory is None:
            raise MappingStructureError(f"Unknown transform: {parsed.raw}")
        try:
            return factory(parsed)
        except (ValueError, TypeError) as e:
            raise MappingStructureError(f"Invalid transform '{parsed.raw}': {e}") from e

    def compile(self, chain: Sequence[str]) -> tuple[TransformFn, ...]:
        cache_key = tuple(chain)
        compiled = self._compiled.get(cache_key)
        if compiled is None:
            compiled = tuple(self.build(k) for k in cache_key)
            self._compiled[cache_key] = compiled
        return compiled

    def validate(self, chain: Iterable[str]) -> None:
        self.compile(tuple(chain))

    def apply(self, value: Any, chain: Sequence[str], context: TransformContext | None = None) -> Any:
        ctx = context or TransformContext()
        result = value
        for fn in self.compile(chain):
            result = fn(result, ctx)
        return result
