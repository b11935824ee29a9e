from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from .engine import TransformContext, TransformFactory, TransformFn, TransformKey

"""Numeric transforms.

Values that are not numeric (numbers or numeric strings) pass through
unchanged. ``Decimal`` values are fixed precision: ``round`` keeps them as
``Decimal`` and ``floor`` / ``ceil`` leave them alone.
"""

__all__ = [
    "FACTORIES",
    "as_number",
]


def as_number(value: Any) -> float | int | Decimal | None:
    """Return ``value`` as a number, or None when it is not numeric."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return float(text) if any(c in text for c in ".eE") else int(text)
        except ValueError:
            return None
    return None


def _factor(key: TransformKey, default: float) -> float:
    if key.param is None or not key.param.strip():
        return default
    return float(key.param)


def _round_factory(key: TransformKey) -> TransformFn:
    precision = int(key.param) if key.param and key.param.strip() else 0

    def apply(value: Any, _ctx: TransformContext) -> Any:
        if isinstance(value, Decimal):
            try:
                return value.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)
            except InvalidOperation:
                return value
        number = as_number(value)
        if number is None:
            return value
        return round(float(number), precision)
    return apply


def _integral(fn) -> TransformFactory:
    def factory(_key: TransformKey) -> TransformFn:
        def apply(value: Any, _ctx: TransformContext) -> Any:
            if isinstance(value, Decimal):
                return value
            number = as_number(value)
            if number is None:
                return value
            return int(fn(float(number)))
        return apply
    return factory


def _multiply_factory(key: TransformKey) -> TransformFn:
    factor = _factor(key, 1.0)

    def apply(value: Any, _ctx: TransformContext) -> Any:
        number = as_number(value)
        if number is None:
            return value
        return float(number) * factor
    return apply


def _divide_factory(key: TransformKey) -> TransformFn:
    divisor = _factor(key, 1.0)

    def apply(value: Any, _ctx: TransformContext) -> Any:
        number = as_number(value)
        if number is None or divisor == 0:
            return value
        return float(number) / divisor
    return apply


def _to_cents(_key: TransformKey) -> TransformFn:
    def apply(value: Any, _ctx: TransformContext) -> Any:
        number = as_number(value)
        if number is None:
            return value
        return int(round(float(number) * 100))
    return apply


def _from_cents(_key: TransformKey) -> TransformFn:
    def apply(value: Any, _ctx: TransformContext) -> Any:
        number = as_number(value)
        if number is None:
            return value
        return float(number) / 100
    return apply


FACTORIES: dict[str, TransformFactory] = {
    "round": _round_factory,
    "floor": _integral(math.floor),
    "ceil": _integral(math.ceil),
    "multiply": _multiply_factory,
    "divide": _divide_factory,
    "to_cents": _to_cents,
    "from_cents": _from_cents,
}
