from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from flowmap.errors import MappingStructureError
from flowmap.transforms.engine import TransformContext, TransformEngine
from flowmap.transforms.utility import cast_value

"""Unit tests for cast/default/hash/split/coalesce/concat/regex transforms."""


@pytest.fixture()
def engine() -> TransformEngine:
    return TransformEngine()


def _row(**fields) -> TransformContext:
    return TransformContext(row=fields, line_number=1)


def test_cast_numbers_and_strings():
    assert cast_value("42", "int") == 42
    assert cast_value("4.0", "integer") == 4
    assert cast_value("1.5", "float") == 1.5
    assert cast_value(7, "string") == "7"
    assert cast_value("1.10", "decimal") == Decimal("1.10")


def test_cast_booleans():
    assert cast_value("yes", "bool") is True
    assert cast_value("OFF", "boolean") is False
    assert cast_value(True, "bool") is True


def test_cast_failures_keep_value_and_empty_becomes_none():
    assert cast_value("x", "int") == "x"
    assert cast_value("", "int") is None
    assert cast_value(None, "float") is None


def test_cast_dates():
    assert cast_value("2024-03-01", "date") == date(2024, 3, 1)
    assert cast_value("nonsense", "date") is None


def test_cast_rejects_unknown_type(engine):
    with pytest.raises(MappingStructureError, match="unsupported cast type"):
        engine.validate(["cast:uuid"])


def test_default_and_null_if_empty(engine):
    assert engine.apply("", ["default:N/A"]) == "N/A"
    assert engine.apply(None, ["default:0"]) == "0"
    assert engine.apply("x", ["default:N/A"]) == "x"
    assert engine.apply("   ", ["null_if_empty"]) is None
    assert engine.apply("a", ["null_if_empty"]) == "a"


def test_hash(engine):
    assert engine.apply("abc", ["hash:md5"]) == "900150983cd24fb0d6963f7d28e17f72"
    assert len(engine.apply("abc", ["hash"])) == 64
    assert engine.apply(None, ["hash"]) is None
    with pytest.raises(MappingStructureError):
        engine.validate(["hash:crc32"])


def test_json_decode(engine):
    assert engine.apply('{"a": 1}', ["json_decode"]) == {"a": 1}
    assert engine.apply("{oops", ["json_decode"]) == "{oops"


def test_split(engine):
    assert engine.apply("a, b,,c", ["split"]) == ["a", "b", "c"]
    assert engine.apply("a|b", ["split:|"]) == ["a", "b"]
    assert engine.apply(["x"], ["split"]) == ["x"]


def test_coalesce_fields_and_literal(engine):
    chain = ['coalesce(alt, "fallback")']
    assert engine.apply("", chain, _row(alt="B")) == "B"
    assert engine.apply("", chain, _row(alt="")) == "fallback"
    assert engine.apply("A", chain, _row(alt="B")) == "A"
    assert engine.apply(None, ["coalesce:N/A"]) == "N/A"


def test_concat(engine):
    ctx = _row(first="Ada", last="Lovelace", middle=None)
    assert engine.apply(None, ["concat(first, last)"], ctx) == "Ada Lovelace"
    assert engine.apply(None, ['concat(first, middle, last, "-")'], ctx) == "Ada-Lovelace"
    with pytest.raises(MappingStructureError):
        engine.validate(["concat()"])


def test_regex_replace(engine):
    assert engine.apply("a  b c", ['regex_replace("/\\s+/", "-")']) == "a-b-c"
    assert engine.apply("ada@home", ['regex_replace("/(\\w+)@(\\w+)/", "$2 at $1")']) == "home at ada"
    assert engine.apply("ABC abc", ['regex_replace("/abc/i", "x")']) == "x x"
    assert engine.apply(5, ['regex_replace("/5/", "x")']) == 5


def test_regex_replace_needs_pattern_and_replacement(engine):
    with pytest.raises(MappingStructureError):
        engine.validate(['regex_replace("/a/")'])
    with pytest.raises(MappingStructureError):
        engine.validate(['regex_replace("/a/q", "x")'])
