"""PostgreSQL-backed event storage over a DB-API 2.0 connection."""

from __future__ import annotations

import json
import logging
from contextlib import closing
from datetime import datetime
from typing import Any, Sequence

from aevon.storage import DuplicateEventError, Event, EventStore

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = """
            id, principal_id, type, schema_version,
            occurred_at, ingested_at, metadata, data, ingest_seq
"""

QUERY_VALIDATE_SCHEMA = """
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_name = 'events'
        )
"""

QUERY_SAVE_EVENT = """
        INSERT INTO events (
            id, principal_id, type, schema_version,
            occurred_at, ingested_at, metadata, data
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (principal_id, id) DO NOTHING
        RETURNING ingest_seq
"""

QUERY_RETRIEVE_EVENTS_AFTER_CURSOR = f"""
        SELECT{_EVENT_COLUMNS}        FROM events
        WHERE ingest_seq > %s
        ORDER BY ingest_seq ASC
        LIMIT %s
"""

QUERY_RETRIEVE_EVENTS_AFTER = f"""
        SELECT{_EVENT_COLUMNS}        FROM events
        WHERE ingested_at > %s
        ORDER BY ingested_at ASC, ingest_seq ASC
        LIMIT %s
"""

QUERY_RETRIEVE_EVENTS_BY_PRINCIPAL_INGESTED_RANGE = f"""
        SELECT{_EVENT_COLUMNS}        FROM events
        WHERE principal_id = %s
          AND ingested_at >= %s
          AND ingested_at <= %s
        ORDER BY ingested_at ASC, ingest_seq ASC
        LIMIT %s
"""

QUERY_RETRIEVE_SCOPED_EVENTS_AFTER_CURSOR = f"""
        SELECT{_EVENT_COLUMNS}        FROM events
        WHERE ingest_seq > %s
          AND principal_id = %s
          AND type = %s
          AND occurred_at >= %s
          AND occurred_at < %s
        ORDER BY ingest_seq ASC
        LIMIT %s
"""

_ROW_WIDTH = 9


class StorageError(Exception):
    """A storage operation failed."""


def marshal_event_json(event: Event) -> tuple[str | None, str]:
    """Return the event's metadata and data as JSON text.

    Empty metadata yields None (SQL NULL) rather than a JSON ``null``.
    """
    metadata_json: str | None = None
    if event.metadata:
        try:
            metadata_json = json.dumps(event.metadata, allow_nan=False)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"failed to marshal metadata: {exc}") from exc
    try:
        data_json = json.dumps(event.data, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise StorageError(f"failed to marshal data: {exc}") from exc
    return metadata_json, data_json


def _decode_json(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        value = bytes(value).decode("utf-8")
    return json.loads(value)


def scan_event_row(row: Sequence[Any]) -> Event:
    """Build an Event from one row of the events table."""
    if len(row) != _ROW_WIDTH:
        raise StorageError(
            f"failed to scan event row: expected {_ROW_WIDTH} columns, got {len(row)}"
        )
    (
        event_id,
        principal_id,
        event_type,
        schema_version,
        occurred_at,
        ingested_at,
        metadata_raw,
        data_raw,
        ingest_seq,
    ) = row

    metadata: dict[str, str] = {}
    if metadata_raw is not None and len(metadata_raw) > 0:
        try:
            metadata = _decode_json(metadata_raw) or {}
        except (ValueError, UnicodeDecodeError, TypeError) as exc:
            raise StorageError(f"failed to unmarshal metadata: {exc}") from exc

    if data_raw is None:
        raise StorageError("failed to unmarshal data: value is NULL")
    try:
        data = _decode_json(data_raw)
    except (ValueError, UnicodeDecodeError, TypeError) as exc:
        raise StorageError(f"failed to unmarshal data: {exc}") from exc

    return Event(
        id=event_id,
        principal_id=principal_id,
        type=event_type,
        data=data if data is not None else {},
        metadata=metadata,
        schema_version=schema_version,
        occurred_at=occurred_at,
        ingested_at=ingested_at,
        ingest_seq=ingest_seq,
    )


def validate_schema(connection: Any) -> None:
    """Raise StorageError unless the events table exists."""
    try:
        with closing(connection.cursor()) as cursor:
            cursor.execute(QUERY_VALIDATE_SCHEMA)
            row = cursor.fetchone()
    except Exception as exc:
        raise StorageError(f"failed to check schema: {exc}") from exc
    if not row or not row[0]:
        raise StorageError("events table does not exist")


class EventAdapter(EventStore):
    """EventStore over an open PostgreSQL DB-API connection.

    The schema must already be migrated; construction fails otherwise.
    """

    def __init__(self, connection: Any) -> None:
        try:
            validate_schema(connection)
        except StorageError as exc:
            raise StorageError(
                f"schema validation failed - did you run migrations?: {exc}"
            ) from exc
        self.connection = connection
        logger.info("[Postgres] Event adapter initialized")

    def __enter__(self) -> EventAdapter:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _rollback_quietly(self) -> None:
        try:
            self.connection.rollback()
        except Exception:
            logger.debug("[Postgres] Rollback failed", exc_info=True)

    def save_event(self, event: Event) -> None:
        """Insert ``event`` and set its ingest_seq.

        Raises DuplicateEventError if (principal_id, id) already exists.
        """
        metadata_json, data_json = marshal_event_json(event)
        params = (
            event.id,
            event.principal_id,
            event.type,
            event.schema_version,
            event.occurred_at,
            event.ingested_at,
            metadata_json,
            data_json,
        )
        try:
            with closing(self.connection.cursor()) as cursor:
                cursor.execute(QUERY_SAVE_EVENT, params)
                row = cursor.fetchone()
            self.connection.commit()
        except Exception as exc:
            self._rollback_quietly()
            raise StorageError(f"failed to save event: {exc}") from exc

        if row is None:
            raise DuplicateEventError()

        event.ingest_seq = row[0]
        logger.debug(
            "[Postgres] Saved event principal_id=%s event_id=%s ingest_seq=%s",
            event.principal_id,
            event.id,
            event.ingest_seq,
        )

    def _fetch_events(self, query: str, params: tuple[Any, ...], what: str) -> list[Event]:
        try:
            with closing(self.connection.cursor()) as cursor:
                cursor.execute(query, params)
                rows = cursor.fetchall()
        except Exception as exc:
            self._rollback_quietly()
            raise StorageError(f"failed to query {what}: {exc}") from exc
        return [scan_event_row(row) for row in rows]

    def retrieve_events_after(self, after_time: datetime, limit: int) -> list[Event]:
        """Return events ingested after ``after_time``. Prefer the cursor form."""
        return self._fetch_events(QUERY_RETRIEVE_EVENTS_AFTER, (after_time, limit), "events")

    def retrieve_events_by_principal_and_ingested_range(
        self,
        principal_id: str,
        start_ingested_at: datetime,
        end_ingested_at: datetime,
        limit: int,
    ) -> list[Event]:
        """Return one principal's events with ingested_at in [start, end]."""
        return self._fetch_events(
            QUERY_RETRIEVE_EVENTS_BY_PRINCIPAL_INGESTED_RANGE,
            (principal_id, start_ingested_at, end_ingested_at, limit),
            "scoped events by ingested range",
        )

    def retrieve_events_after_cursor(self, cursor: int, limit: int) -> list[Event]:
        """Return events with ingest_seq above ``cursor``, in ingest order."""
        return self._fetch_events(
            QUERY_RETRIEVE_EVENTS_AFTER_CURSOR, (cursor, limit), "events by cursor"
        )

    def retrieve_scoped_events_after_cursor(
        self,
        cursor: int,
        principal_id: str,
        event_type: str,
        start_occurred_at: datetime,
        end_occurred_at: datetime,
        limit: int,
    ) -> list[Event]:
        """Return events after ``cursor`` for one principal, type and occurred_at range."""
        return self._fetch_events(
            QUERY_RETRIEVE_SCOPED_EVENTS_AFTER_CURSOR,
            (cursor, principal_id, event_type, start_occurred_at, end_occurred_at, limit),
            "scoped events by cursor",
        )

    def close(self) -> None:
        """Close the underlying connection."""
        try:
            self.connection.close()
        except Exception as exc:
            raise StorageError(f"failed to close database: {exc}") from exc
        logger.info("[Postgres] Adapter closed gracefully")