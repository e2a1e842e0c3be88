from datetime import datetime, timezone
from decimal import Decimal

import pytest

from aevon.aggregators import (
    OPERATORS,
    AggregateKey,
    AggregateState,
    CountAggregator,
    MaxAggregator,
    MinAggregator,
    Operator,
    SumAggregator,
    valid_operator,
)


@pytest.mark.parametrize(
    "op, incoming, current, nxt, want_initial, want_apply",
    [
        (Operator.COUNT, 123, 9, 456, 1, 10),
        (Operator.SUM, 3, 9, 4, 3, 13),
        (Operator.MIN, 3, 9, 4, 3, 4),
        (Operator.MIN, 3, 4, 9, 3, 4),
        (Operator.MAX, 3, 9, 4, 3, 9),
        (Operator.MAX, 3, 4, 9, 3, 9),
    ],
    ids=[
        "count",
        "sum",
        "min keeps lower",
        "min keeps current when incoming is higher",
        "max keeps higher",
        "max takes incoming when incoming is higher",
    ],
)
def test_operators_initial_and_apply(op, incoming, current, nxt, want_initial, want_apply):
    agg = OPERATORS[op.value]
    assert agg.initial(Decimal(incoming)) == Decimal(want_initial)
    assert agg.apply(Decimal(current), Decimal(nxt)) == Decimal(want_apply)


def test_valid_operator():
    assert valid_operator(Operator.COUNT)
    assert valid_operator("sum")
    assert valid_operator("min")
    assert valid_operator("max")
    assert not valid_operator("avg")
    assert not valid_operator("")


@pytest.mark.parametrize(
    "name, cls",
    [
        ("count", CountAggregator),
        ("sum", SumAggregator),
        ("min", MinAggregator),
        ("max", MaxAggregator),
    ],
)
def test_registry_entries_behave_like_their_classes(name, cls):
    assert valid_operator(name)
    registered = OPERATORS[name]
    standalone = cls()
    assert registered.initial(Decimal(7)) == standalone.initial(Decimal(7))
    assert registered.apply(Decimal(5), Decimal(2)) == standalone.apply(Decimal(5), Decimal(2))
    assert registered.apply(Decimal(2), Decimal(5)) == standalone.apply(Decimal(2), Decimal(5))


def test_every_operator_is_registered():
    assert all(valid_operator(op.value) for op in Operator)
    assert set(OPERATORS) == {op.value for op in Operator}


def test_count_apply_ignores_incoming_value():
    agg = CountAggregator()
    assert agg.apply(Decimal(5), Decimal("1000.5")) == Decimal(6)


def test_aggregate_key_is_usable_as_dict_key():
    start = datetime(2026, 2, 3, 10, 35, tzinfo=timezone.utc)
    first = AggregateKey(1, "user:alice", "count_requests", "1m", start)
    second = AggregateKey(1, "user:alice", "count_requests", "1m", start)
    table = {first: AggregateState(operator="count", value=Decimal(2))}
    assert table[second].value == Decimal(2)


def test_aggregate_state_defaults():
    state = AggregateState(operator="sum")
    assert state.value == Decimal(0)
    assert state.event_count == 0
    assert state.window_start is None