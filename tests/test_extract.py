from decimal import Decimal

import pytest

from aevon.extract import extract_decimal


@pytest.mark.parametrize(
    "data, field, want",
    [
        ({"value": 1}, "", Decimal(0)),
        ({"value": 1}, "missing", Decimal(0)),
        ({"value": 12.5}, "value", Decimal("12.5")),
        ({"value": 7.25}, "value", Decimal("7.25")),
        ({"value": 7}, "value", Decimal(7)),
        ({"value": 8}, "value", Decimal(8)),
        ({"value": 9}, "value", Decimal(9)),
        ({"value": "42.125"}, "value", Decimal("42.125")),
        ({"value": "not-a-number"}, "value", Decimal(0)),
        ({"value": True}, "value", Decimal(0)),
    ],
    ids=[
        "empty field name",
        "missing field",
        "float64",
        "float32",
        "int",
        "int32",
        "int64",
        "valid decimal string",
        "invalid string returns zero",
        "unsupported type returns zero",
    ],
)
def test_extract_decimal(data, field, want):
    assert extract_decimal(data, field) == want


def test_float_keeps_shortest_representation():
    assert str(extract_decimal({"v": 0.1}, "v")) == "0.1"


def test_none_and_containers_return_zero():
    assert extract_decimal({"v": None}, "v") == Decimal(0)
    assert extract_decimal({"v": [1, 2]}, "v") == Decimal(0)
    assert extract_decimal(None, "v") == Decimal(0)


def test_non_finite_values_return_zero():
    assert extract_decimal({"v": float("nan")}, "v") == Decimal(0)
    assert extract_decimal({"v": "NaN"}, "v") == Decimal(0)