"""Aggregation operators and the keys and states they produce."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum


class Operator(str, Enum):
    """Supported aggregation operators."""

    COUNT = "count"
    SUM = "sum"
    MIN = "min"
    MAX = "max"

    def __str__(self) -> str:
        return self.value


class Aggregator(abc.ABC):
    """Reduce semantics of one aggregation operator."""

    @abc.abstractmethod
    def initial(self, incoming: Decimal) -> Decimal:
        """Return the aggregate value after the first event for a key."""

    @abc.abstractmethod
    def apply(self, current: Decimal, incoming: Decimal) -> Decimal:
        """Fold an incoming value into an existing aggregate."""


class CountAggregator(Aggregator):
    """Counts events; the incoming value is ignored."""

    def initial(self, incoming: Decimal) -> Decimal:
        return Decimal(1)

    def apply(self, current: Decimal, incoming: Decimal) -> Decimal:
        return current + 1


class SumAggregator(Aggregator):
    """Accumulates the sum of incoming values."""

    def initial(self, incoming: Decimal) -> Decimal:
        return incoming

    def apply(self, current: Decimal, incoming: Decimal) -> Decimal:
        return current + incoming


class MinAggregator(Aggregator):
    """Tracks the smallest value seen."""

    def initial(self, incoming: Decimal) -> Decimal:
        return incoming

    def apply(self, current: Decimal, incoming: Decimal) -> Decimal:
        return incoming if incoming < current else current


class MaxAggregator(Aggregator):
    """Tracks the largest value seen."""

    def initial(self, incoming: Decimal) -> Decimal:
        return incoming

    def apply(self, current: Decimal, incoming: Decimal) -> Decimal:
        return incoming if incoming > current else current


OPERATORS: dict[str, Aggregator] = {
    Operator.COUNT.value: CountAggregator(),
    Operator.SUM.value: SumAggregator(),
    Operator.MIN.value: MinAggregator(),
    Operator.MAX.value: MaxAggregator(),
}


def valid_operator(op: str) -> bool:
    """Report whether ``op`` names a registered aggregation operator."""
    return isinstance(op, str) and op in OPERATORS


@dataclass(frozen=True)
class AggregateKey:
    """Uniquely identifies a pre-aggregate bucket."""

    partition_id: int
    principal_id: str
    rule_name: str
    bucket_size: str
    window_start: datetime


@dataclass
class AggregateState:
    """The current materialized value of a pre-aggregate."""

    operator: str
    value: Decimal = Decimal(0)
    event_count: int = 0
    last_event_id: str = ""
    rule_fingerprint: str = ""
    window_start: datetime | None = None
    updated_at: datetime | None = None