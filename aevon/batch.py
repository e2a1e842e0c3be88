"""Cron-style batch aggregation of events into pre-aggregates."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Mapping, Sequence

from aevon.aggregators import OPERATORS, AggregateKey, Aggregator, AggregateState, Operator
from aevon.extract import extract_decimal
from aevon.partition import partition_for
from aevon.rules import AggregationRule
from aevon.storage import Event, EventStore
from aevon.windows import bucket_for

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50000
DEFAULT_WORKER_COUNT = 10
DEFAULT_BUCKET_SIZE = timedelta(minutes=1)

_MICROS_PER_SECOND = 1_000_000


class PreAggregateStore(abc.ABC):
    """Durable pre-aggregate persistence with bucket-scoped checkpoints.

    ``flush`` must write the aggregates and the checkpoint atomically: a
    checkpoint of N means the stored state includes every event up to
    ingest_seq N and none after it.
    """

    @abc.abstractmethod
    def flush(
        self,
        aggregates: Mapping[AggregateKey, AggregateState],
        cursor: int,
        bucket_size: str,
    ) -> None:
        """Upsert ``aggregates`` and advance the checkpoint to ``cursor``."""

    @abc.abstractmethod
    def read_checkpoint(self, bucket_size: str) -> int:
        """Return the checkpoint for ``bucket_size``, or 0 if there is none."""

    @abc.abstractmethod
    def load_aggregates(self) -> dict[AggregateKey, AggregateState]:
        """Return every stored pre-aggregate."""

    @abc.abstractmethod
    def query_range(
        self,
        principal_id: str,
        rule_name: str,
        bucket_size: str,
        start_time: datetime,
        end_time: datetime,
    ) -> list[AggregateState]:
        """Return one principal's aggregates for a rule, ordered by window start."""


@dataclass(frozen=True)
class BatchJobParameter:
    """Throughput and bucketing settings for one batch run.

    Zero or empty values are replaced by defaults in :meth:`normalized`.
    """

    batch_size: int = 0
    worker_count: int = 0
    bucket_size: timedelta = timedelta(0)
    bucket_label: str = ""

    def normalized(self) -> BatchJobParameter:
        """Return a copy with every unset or invalid field defaulted."""
        batch_size = self.batch_size if self.batch_size > 0 else DEFAULT_BATCH_SIZE
        worker_count = self.worker_count if self.worker_count > 0 else DEFAULT_WORKER_COUNT
        bucket_size = self.bucket_size if self.bucket_size > timedelta(0) else DEFAULT_BUCKET_SIZE
        bucket_label = self.bucket_label or window_size_label(bucket_size)
        return replace(
            self,
            batch_size=batch_size,
            worker_count=worker_count,
            bucket_size=bucket_size,
            bucket_label=bucket_label,
        )


def default_batch_job_options() -> BatchJobParameter:
    """Return the defaults: 50K events per batch, 10 workers, 1-minute buckets."""
    return BatchJobParameter(
        batch_size=DEFAULT_BATCH_SIZE,
        worker_count=DEFAULT_WORKER_COUNT,
        bucket_size=DEFAULT_BUCKET_SIZE,
        bucket_label="1m",
    )


def _format_duration(duration: timedelta) -> str:
    micros = duration // timedelta(microseconds=1)
    if micros == 0:
        return "0s"
    sign = "-" if micros < 0 else ""
    micros = abs(micros)
    if micros < _MICROS_PER_SECOND:
        if micros < 1000:
            return f"{sign}{micros}µs"
        return f"{sign}{Decimal(micros) / Decimal(1000)}ms"
    hours, rest = divmod(micros, 3600 * _MICROS_PER_SECOND)
    minutes, rest = divmod(rest, 60 * _MICROS_PER_SECOND)
    seconds = Decimal(rest) / Decimal(_MICROS_PER_SECOND)
    if hours:
        return f"{sign}{hours}h{minutes}m{seconds}s"
    if minutes:
        return f"{sign}{minutes}m{seconds}s"
    return f"{sign}{seconds}s"


def window_size_label(duration: timedelta) -> str:
    """Return a short label such as ``"1m"``, ``"2h"`` or ``"1d"`` for a duration."""
    units = (
        (timedelta(days=1), "d"),
        (timedelta(hours=1), "h"),
        (timedelta(minutes=1), "m"),
        (timedelta(seconds=1), "s"),
    )
    for unit, suffix in units:
        if duration % unit == timedelta(0):
            return f"{duration // unit}{suffix}"
    return _format_duration(duration)


def merge_value_by_operator(operator: str, current: Decimal, incoming: Decimal) -> Decimal:
    """Combine two partial aggregate values produced for the same key."""
    if operator in (Operator.COUNT.value, Operator.SUM.value):
        return current + incoming
    if operator == Operator.MIN.value:
        return incoming if incoming < current else current
    if operator == Operator.MAX.value:
        return incoming if incoming > current else current
    return incoming


def _compile_rules(
    rules: Iterable[AggregationRule],
) -> dict[str, list[tuple[AggregationRule, Aggregator]]]:
    compiled: dict[str, list[tuple[AggregationRule, Aggregator]]] = {}
    for rule in rules:
        aggregator = OPERATORS.get(rule.operator)
        if aggregator is None:
            logger.warning(
                "[BatchJob] Skip rule with unknown operator rule=%s operator=%s",
                rule.name,
                rule.operator,
            )
            continue
        compiled.setdefault(rule.source_event, []).append((rule, aggregator))
    return compiled


def _aggregate_group(
    events: Iterable[Event],
    compiled: Mapping[str, list[tuple[AggregationRule, Aggregator]]],
    params: BatchJobParameter,
    now: datetime,
) -> dict[AggregateKey, AggregateState]:
    local: dict[AggregateKey, AggregateState] = {}
    for event in events:
        for rule, aggregator in compiled.get(event.type, ()):
            window_start = bucket_for(event.occurred_at, params.bucket_size)
            key = AggregateKey(
                partition_id=partition_for(event.principal_id),
                principal_id=event.principal_id,
                rule_name=rule.name,
                bucket_size=params.bucket_label,
                window_start=window_start,
            )
            incoming = extract_decimal(event.data, rule.field)
            state = local.get(key)
            if state is None:
                local[key] = AggregateState(
                    operator=rule.operator,
                    value=aggregator.initial(incoming),
                    event_count=1,
                    last_event_id=event.id,
                    rule_fingerprint=rule.fingerprint,
                    window_start=window_start,
                    updated_at=now,
                )
                continue
            state.value = aggregator.apply(state.value, incoming)
            state.event_count += 1
            state.last_event_id = event.id
            state.updated_at = now
    return local


def _merge_into(
    target: dict[AggregateKey, AggregateState],
    partial: Mapping[AggregateKey, AggregateState],
) -> None:
    for key, state in partial.items():
        existing = target.get(key)
        if existing is None:
            target[key] = state
            continue
        existing.value = merge_value_by_operator(existing.operator, existing.value, state.value)
        existing.event_count += state.event_count
        existing.last_event_id = state.last_event_id
        existing.rule_fingerprint = state.rule_fingerprint
        if existing.updated_at is None or (
            state.updated_at is not None and state.updated_at > existing.updated_at
        ):
            existing.updated_at = state.updated_at


def build_pre_aggregates(
    events: Sequence[Event],
    rules: Iterable[AggregationRule],
    job_parameter: BatchJobParameter | None = None,
) -> dict[AggregateKey, AggregateState]:
    """Fold ``events`` into pre-aggregates keyed by principal, rule and window.

    Events are grouped by principal and each group is reduced in event order.
    """
    params = (job_parameter or default_batch_job_options()).normalized()
    compiled = _compile_rules(rules)

    groups: dict[str, list[Event]] = {}
    for event in events:
        groups.setdefault(event.principal_id, []).append(event)

    now = datetime.now(timezone.utc)
    merged: dict[AggregateKey, AggregateState] = {}
    for group in groups.values():
        _merge_into(merged, _aggregate_group(group, compiled, params, now))
    return merged


def run_batch_aggregation(
    event_store: EventStore,
    pre_agg_store: PreAggregateStore,
    rules: Iterable[AggregationRule],
    job_parameter: BatchJobParameter | None = None,
) -> int:
    """Aggregate the events after the last checkpoint and flush them.

    Returns the number of events processed; 0 means nothing was pending.
    """
    params = (job_parameter or default_batch_job_options()).normalized()

    cursor = pre_agg_store.read_checkpoint(params.bucket_label)
    logger.info(
        "[BatchJob] Starting batch aggregation cursor=%d bucket_size=%s batch_size=%d workers=%d",
        cursor,
        params.bucket_label,
        params.batch_size,
        params.worker_count,
    )

    events = event_store.retrieve_events_after_cursor(cursor, params.batch_size)
    if not events:
        logger.debug("[BatchJob] No new events to process bucket_size=%s", params.bucket_label)
        return 0

    aggregates = build_pre_aggregates(events, list(rules), params)
    new_cursor = events[-1].ingest_seq
    pre_agg_store.flush(aggregates, new_cursor, params.bucket_label)

    logger.info(
        "[BatchJob] Batch complete events_processed=%d aggregates_computed=%d "
        "cursor_advanced=%d -> %d bucket_size=%s",
        len(events),
        len(aggregates),
        cursor,
        new_cursor,
        params.bucket_label,
    )
    return len(events)