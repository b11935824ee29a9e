from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import pytest

from flowmap.transforms.engine import TransformEngine
from flowmap.transforms.numeric import as_number
from flowmap.transforms.temporal import to_datetime

"""Unit tests for numeric and date/time transforms."""


@pytest.fixture()
def engine() -> TransformEngine:
    return TransformEngine()


def test_as_number():
    assert as_number("12") == 12
    assert isinstance(as_number("12"), int)
    assert as_number(" 1.5 ") == 1.5
    assert as_number("1e3") == 1000.0
    assert as_number(True) is None
    assert as_number("") is None
    assert as_number("abc") is None


def test_round(engine):
    assert engine.apply("3.14159", ["round:2"]) == 3.14
    assert engine.apply(2.6, ["round"]) == 3.0
    assert engine.apply(Decimal("2.25"), ["round:1"]) == Decimal("2.3")
    assert engine.apply("n/a", ["round:2"]) == "n/a"


def test_floor_and_ceil(engine):
    assert engine.apply("3.7", ["floor"]) == 3
    assert engine.apply(3.2, ["ceil"]) == 4


def test_multiply_and_divide(engine):
    assert engine.apply("1.5", ["multiply:100"]) == 150.0
    assert engine.apply(10, ["divide:4"]) == 2.5
    assert engine.apply(10, ["divide:0"]) == 10
    assert engine.apply("abc", ["multiply:2"]) == "abc"


def test_cents(engine):
    assert engine.apply("12.34", ["to_cents"]) == 1234
    assert engine.apply(1234, ["from_cents"]) == 12.34


def test_parse_date_default_format(engine):
    assert engine.apply("31/12/2024", ["parse_date"]) == datetime(2024, 12, 31)
    assert engine.apply("12/31/2024", ["parse_date:%m/%d/%Y"]) == datetime(2024, 12, 31)


def test_parse_date_leaves_unmatched_values(engine):
    assert engine.apply("2024-12-31", ["parse_date"]) == "2024-12-31"
    assert engine.apply("", ["parse_date"]) == ""


def test_date_format(engine):
    assert engine.apply("2024-12-31", ["date_format"]) == "2024-12-31"
    assert engine.apply(datetime(2024, 1, 5), ["date_format:%d/%m/%Y"]) == "05/01/2024"
    assert engine.apply("31/12/2024", ["parse_date", "date_format:%Y-%m-%d"]) == "2024-12-31"
    assert engine.apply("garbage", ["date_format"]) == "garbage"


def test_timestamp(engine):
    assert engine.apply("1970-01-02", ["timestamp"]) == 86400
    assert engine.apply(None, ["timestamp"]) is None


def test_to_datetime_rejects_garbage():
    with pytest.raises(ValueError):
        to_datetime("definitely not a date")
