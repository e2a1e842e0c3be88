"""PostgreSQL-backed pre-aggregate storage over a DB-API 2.0 connection."""

from __future__ import annotations

import logging
from contextlib import closing
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Sequence

from aevon.aggregators import AggregateKey, AggregateState
from aevon.batch import PreAggregateStore

logger = logging.getLogger(__name__)

DEFAULT_BUCKET_SIZE = "1m"

# Single-tenant deployments always read partition 0.
QUERY_PARTITION_ID = 0

QUERY_SELECT_CHECKPOINT_FOR_UPDATE = """
        SELECT checkpoint_cursor
        FROM sweep_checkpoints
        WHERE bucket_size = %s
        FOR UPDATE
"""

QUERY_INIT_CHECKPOINT_ROW = """
        INSERT INTO sweep_checkpoints (bucket_size, checkpoint_cursor, updated_at)
        VALUES (%s, 0, %s)
        ON CONFLICT (bucket_size) DO NOTHING
"""

QUERY_UPSERT_PRE_AGGREGATE = """
        INSERT INTO pre_aggregates (
            partition_id, principal_id, rule_name, rule_fingerprint,
            bucket_size, window_start, operator, value, event_count, last_event_id, updated_at
        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (partition_id, principal_id, rule_name, bucket_size, window_start)
        DO UPDATE SET
            value = CASE EXCLUDED.operator
                WHEN 'count' THEN pre_aggregates.value + EXCLUDED.value
                WHEN 'sum' THEN pre_aggregates.value + EXCLUDED.value
                WHEN 'min' THEN LEAST(pre_aggregates.value, EXCLUDED.value)
                WHEN 'max' THEN GREATEST(pre_aggregates.value, EXCLUDED.value)
                ELSE EXCLUDED.value
            END,
            event_count      = pre_aggregates.event_count + EXCLUDED.event_count,
            last_event_id    = EXCLUDED.last_event_id,
            rule_fingerprint = EXCLUDED.rule_fingerprint,
            updated_at       = EXCLUDED.updated_at
"""

QUERY_UPDATE_CHECKPOINT = """
        UPDATE sweep_checkpoints
        SET checkpoint_cursor = %s, updated_at = %s
        WHERE bucket_size = %s
"""

QUERY_READ_CHECKPOINT = (
    "SELECT checkpoint_cursor FROM sweep_checkpoints WHERE bucket_size = %s"
)

QUERY_LOAD_AGGREGATES = """
        SELECT
            partition_id, principal_id, rule_name, rule_fingerprint,
            bucket_size, window_start, operator, value, event_count, last_event_id, updated_at
        FROM pre_aggregates
"""

QUERY_RANGE_PRE_AGGREGATES = """
        SELECT
            window_start,
            operator,
            value,
            event_count,
            last_event_id,
            rule_fingerprint,
            updated_at
        FROM pre_aggregates
        WHERE partition_id = %s
          AND principal_id = %s
          AND rule_name = %s
          AND bucket_size = %s
          AND window_start >= %s
          AND window_start < %s
        ORDER BY window_start ASC
"""

QUERY_RANGE_PRE_AGGREGATES_WITH_CHECKPOINT = """
        WITH checkpoint AS (
            SELECT COALESCE(
                (SELECT checkpoint_cursor FROM sweep_checkpoints
                 WHERE bucket_size = %(bucket_size)s),
                0
            ) AS checkpoint_cursor
        ),
        scoped AS (
            SELECT
                window_start,
                operator,
                value,
                event_count,
                last_event_id,
                rule_fingerprint,
                updated_at
            FROM pre_aggregates
            WHERE partition_id = %(partition_id)s
              AND principal_id = %(principal_id)s
              AND rule_name = %(rule_name)s
              AND bucket_size = %(bucket_size)s
              AND window_start >= %(start_time)s
              AND window_start < %(end_time)s
        )
        SELECT
            checkpoint.checkpoint_cursor,
            scoped.window_start,
            scoped.operator,
            scoped.value,
            scoped.event_count,
            scoped.last_event_id,
            scoped.rule_fingerprint,
            scoped.updated_at
        FROM checkpoint
        LEFT JOIN scoped ON TRUE
        ORDER BY scoped.window_start ASC NULLS LAST
"""


class PreAggregateError(Exception):
    """A pre-aggregate storage operation failed."""


def _parse_value(raw: Any, prefix: str) -> Decimal:
    if isinstance(raw, Decimal):
        value = raw
    else:
        try:
            value = Decimal(str(raw).strip())
        except (InvalidOperation, ValueError) as exc:
            raise PreAggregateError(f"{prefix}parse value {raw!r}: {exc}") from exc
    if not value.is_finite():
        raise PreAggregateError(f"{prefix}parse value {raw!r}: not a finite number")
    return value


class PreAggregateAdapter(PreAggregateStore):
    """PreAggregateStore over a PostgreSQL connection shared with the event store.

    Aggregates and the checkpoint are written in one transaction, which is
    what keeps replay after a crash from counting events twice.
    """

    def __init__(self, connection: Any) -> None:
        self.connection = connection

    def _rollback_quietly(self) -> None:
        try:
            self.connection.rollback()
        except Exception:
            logger.debug("[PreAggregateAdapter] Rollback failed", exc_info=True)

    @staticmethod
    def _execute(cursor: Any, query: str, params: Any, what: str) -> None:
        try:
            cursor.execute(query, params)
        except Exception as exc:
            raise PreAggregateError(f"pre_aggregate flush: {what}: {exc}") from exc

    def _lock_checkpoint(self, cursor: Any, bucket_size: str) -> int:
        self._execute(
            cursor, QUERY_SELECT_CHECKPOINT_FOR_UPDATE, (bucket_size,), "read checkpoint for update"
        )
        row = cursor.fetchone()
        if row is not None:
            return int(row[0])

        self._execute(
            cursor,
            QUERY_INIT_CHECKPOINT_ROW,
            (bucket_size, datetime.now(timezone.utc)),
            "init checkpoint row",
        )
        self._execute(
            cursor,
            QUERY_SELECT_CHECKPOINT_FOR_UPDATE,
            (bucket_size,),
            "read initialized checkpoint for update",
        )
        row = cursor.fetchone()
        if row is None:
            raise PreAggregateError(
                "pre_aggregate flush: read initialized checkpoint for update: no row"
            )
        return int(row[0])

    def flush(
        self,
        aggregates: Mapping[AggregateKey, AggregateState],
        cursor: int,
        bucket_size: str = "",
    ) -> None:
        """Upsert ``aggregates`` and advance the bucket checkpoint in one transaction.

        A cursor at or below the stored checkpoint is a stale flush and is
        skipped without writing anything.
        """
        bucket_size = bucket_size or DEFAULT_BUCKET_SIZE
        committed = False
        try:
            with closing(self.connection.cursor()) as db_cursor:
                durable_cursor = self._lock_checkpoint(db_cursor, bucket_size)
                if cursor <= durable_cursor:
                    logger.warning(
                        "[PreAggregateAdapter] Skipping stale/no-op flush "
                        "cursor=%d durable_cursor=%d aggregates=%d",
                        cursor,
                        durable_cursor,
                        len(aggregates),
                    )
                    return

                for key, state in aggregates.items():
                    key_bucket = key.bucket_size or DEFAULT_BUCKET_SIZE
                    if key_bucket != bucket_size:
                        raise PreAggregateError(
                            "pre_aggregate flush: aggregate bucket mismatch: "
                            f"expected {bucket_size}, got {key_bucket} for key {key}"
                        )
                    self._execute(
                        db_cursor,
                        QUERY_UPSERT_PRE_AGGREGATE,
                        (
                            key.partition_id,
                            key.principal_id,
                            key.rule_name,
                            state.rule_fingerprint,
                            key_bucket,
                            key.window_start,
                            str(state.operator),
                            state.value,
                            state.event_count,
                            state.last_event_id,
                            state.updated_at,
                        ),
                        f"upsert {key}",
                    )

                self._execute(
                    db_cursor,
                    QUERY_UPDATE_CHECKPOINT,
                    (cursor, datetime.now(timezone.utc), bucket_size),
                    "write checkpoint",
                )
                if db_cursor.rowcount == 0:
                    raise PreAggregateError(
                        f"pre_aggregate flush: checkpoint row missing (bucket={bucket_size})"
                    )

            try:
                self.connection.commit()
            except Exception as exc:
                raise PreAggregateError(f"pre_aggregate flush: commit: {exc}") from exc
            committed = True
        finally:
            if not committed:
                self._rollback_quietly()

        logger.info(
            "[PreAggregateAdapter] Flushed aggregates=%d cursor=%d bucket_size=%s",
            len(aggregates),
            cursor,
            bucket_size,
        )

    def _query(self, query: str, params: Any, prefix: str) -> list[Sequence[Any]]:
        try:
            with closing(self.connection.cursor()) as db_cursor:
                db_cursor.execute(query, params)
                return list(db_cursor.fetchall())
        except Exception as exc:
            self._rollback_quietly()
            raise PreAggregateError(f"{prefix}{exc}") from exc

    def read_checkpoint(self, bucket_size: str = "") -> int:
        """Return the checkpoint for ``bucket_size``; 0 when none exists yet."""
        bucket_size = bucket_size or DEFAULT_BUCKET_SIZE
        rows = self._query(QUERY_READ_CHECKPOINT, (bucket_size,), "read global checkpoint: ")
        if not rows:
            return 0
        return int(rows[0][0])

    def load_aggregates(self) -> dict[AggregateKey, AggregateState]:
        """Return every stored pre-aggregate, keyed by its bucket key."""
        rows = self._query(QUERY_LOAD_AGGREGATES, None, "load aggregates: ")
        aggregates: dict[AggregateKey, AggregateState] = {}
        for row in rows:
            try:
                (
                    partition_id,
                    principal_id,
                    rule_name,
                    rule_fingerprint,
                    bucket_size,
                    window_start,
                    operator,
                    raw_value,
                    event_count,
                    last_event_id,
                    updated_at,
                ) = row
            except ValueError as exc:
                raise PreAggregateError(f"load aggregates: scan row: {exc}") from exc
            key = AggregateKey(
                partition_id=partition_id,
                principal_id=principal_id,
                rule_name=rule_name,
                bucket_size=bucket_size,
                window_start=window_start,
            )
            aggregates[key] = AggregateState(
                operator=operator,
                value=_parse_value(raw_value, "load aggregates: "),
                event_count=event_count,
                last_event_id=last_event_id,
                rule_fingerprint=rule_fingerprint,
                window_start=window_start,
                updated_at=updated_at,
            )
        logger.info("[PreAggregateAdapter] Loaded aggregates from database count=%d", len(aggregates))
        return aggregates

    def query_range(
        self,
        principal_id: str,
        rule_name: str,
        bucket_size: str,
        start_time: datetime,
        end_time: datetime,
    ) -> list[AggregateState]:
        """Return aggregates with window_start in [start, end), oldest first."""
        bucket_size = bucket_size or DEFAULT_BUCKET_SIZE
        rows = self._query(
            QUERY_RANGE_PRE_AGGREGATES,
            (QUERY_PARTITION_ID, principal_id, rule_name, bucket_size, start_time, end_time),
            "query pre_aggregates: ",
        )
        results = []
        for row in rows:
            try:
                (
                    window_start,
                    operator,
                    raw_value,
                    event_count,
                    last_event_id,
                    rule_fingerprint,
                    updated_at,
                ) = row
            except ValueError as exc:
                raise PreAggregateError(f"scan row: {exc}") from exc
            results.append(
                AggregateState(
                    operator=operator,
                    value=_parse_value(raw_value, ""),
                    event_count=event_count,
                    last_event_id=last_event_id,
                    rule_fingerprint=rule_fingerprint,
                    window_start=window_start,
                    updated_at=updated_at,
                )
            )
        return results

    def query_range_with_checkpoint(
        self,
        principal_id: str,
        rule_name: str,
        bucket_size: str,
        start_time: datetime,
        end_time: datetime,
    ) -> tuple[list[AggregateState], int]:
        """Return aggregates in [start, end) and the bucket checkpoint from one snapshot."""
        bucket_size = bucket_size or DEFAULT_BUCKET_SIZE
        rows = self._query(
            QUERY_RANGE_PRE_AGGREGATES_WITH_CHECKPOINT,
            {
                "partition_id": QUERY_PARTITION_ID,
                "principal_id": principal_id,
                "rule_name": rule_name,
                "bucket_size": bucket_size,
                "start_time": start_time,
                "end_time": end_time,
            },
            "query pre_aggregates with checkpoint: ",
        )

        results: list[AggregateState] = []
        checkpoint = 0
        for index, row in enumerate(rows):
            try:
                (
                    scanned_checkpoint,
                    window_start,
                    operator,
                    raw_value,
                    event_count,
                    last_event_id,
                    rule_fingerprint,
                    updated_at,
                ) = row
            except ValueError as exc:
                raise PreAggregateError(f"scan row: {exc}") from exc
            if index == 0:
                checkpoint = int(scanned_checkpoint)
            # The LEFT JOIN yields one row of NULL aggregate columns for an empty range.
            if window_start is None:
                continue
            if raw_value is None:
                raise PreAggregateError("scan row: aggregate value is NULL")
            results.append(
                AggregateState(
                    operator=operator or "",
                    value=_parse_value(raw_value, ""),
                    event_count=event_count or 0,
                    last_event_id=last_event_id or "",
                    rule_fingerprint=rule_fingerprint or "",
                    window_start=window_start,
                    updated_at=updated_at,
                )
            )
        return results, checkpoint