import json
import math
from datetime import datetime, timedelta, timezone

import pytest

from aevon.postgres_events import (
    QUERY_RETRIEVE_EVENTS_AFTER,
    QUERY_RETRIEVE_EVENTS_AFTER_CURSOR,
    QUERY_RETRIEVE_EVENTS_BY_PRINCIPAL_INGESTED_RANGE,
    QUERY_RETRIEVE_SCOPED_EVENTS_AFTER_CURSOR,
    QUERY_SAVE_EVENT,
    EventAdapter,
    StorageError,
    marshal_event_json,
    scan_event_row,
    validate_schema,
)
from aevon.storage import DuplicateEventError, Event


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rows = []

    def execute(self, query, params=None):
        self.conn.executed.append((query, tuple(params) if params else ()))
        if "information_schema" in query:
            self.rows = [(self.conn.schema_exists,)]
            return
        result = self.conn.results.pop(0)
        if isinstance(result, Exception):
            raise result
        self.rows = list(result)

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)

    def close(self):
        pass


class FakeConnection:
    def __init__(self, results=(), schema_exists=True, close_error=None):
        self.results = list(results)
        self.schema_exists = schema_exists
        self.close_error = close_error
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        if self.close_error is not None:
            raise self.close_error
        self.closed = True


NOW = datetime(2026, 2, 8, 12, 0, tzinfo=timezone.utc)


def make_event(**overrides):
    values = dict(
        id="evt-1",
        principal_id="user-1",
        type="api.request",
        schema_version=1,
        occurred_at=NOW,
        ingested_at=NOW,
        metadata={"source": "api"},
        data={"count": 3},
    )
    values.update(overrides)
    return Event(**values)


def test_save_event_sets_ingest_seq():
    conn = FakeConnection(results=[[(42,)]])
    adapter = EventAdapter(conn)
    event = make_event()

    adapter.save_event(event)

    assert event.ingest_seq == 42
    query, params = conn.executed[-1]
    assert query == QUERY_SAVE_EVENT
    assert params[:6] == ("evt-1", "user-1", "api.request", 1, NOW, NOW)
    assert json.loads(params[6]) == {"source": "api"}
    assert json.loads(params[7]) == {"count": 3}
    assert conn.commits == 1


def test_save_event_duplicate_raises():
    conn = FakeConnection(results=[[]])
    adapter = EventAdapter(conn)
    event = make_event(id="evt-dup", metadata={}, data={"count": 1})

    with pytest.raises(DuplicateEventError):
        adapter.save_event(event)
    assert event.ingest_seq == 0


def test_save_event_marshal_error_short_circuits():
    conn = FakeConnection()
    adapter = EventAdapter(conn)
    event = make_event(id="evt-bad", data={"value": math.nan})

    with pytest.raises(StorageError, match="failed to marshal data"):
        adapter.save_event(event)
    assert all("INSERT" not in query for query, _ in conn.executed)


def test_save_event_driver_error_is_wrapped():
    failure = RuntimeError("connection reset")
    conn = FakeConnection(results=[failure])
    adapter = EventAdapter(conn)

    with pytest.raises(StorageError, match="failed to save event") as info:
        adapter.save_event(make_event())
    assert info.value.__cause__ is failure
    assert conn.rollbacks == 1


def test_retrieve_events_after_cursor():
    occurred = datetime(2026, 2, 8, 10, 0, tzinfo=timezone.utc)
    ingested = occurred + timedelta(seconds=2)
    rows = [
        ("evt-101", "user-1", "api.request", 1, occurred, ingested,
         b'{"source":"api"}', b'{"count":3}', 101),
        ("evt-102", "user-1", "api.request", 1, occurred + timedelta(minutes=1),
         ingested + timedelta(minutes=1), b'{"source":"worker"}', b'{"count":4}', 102),
    ]
    conn = FakeConnection(results=[rows])
    adapter = EventAdapter(conn)

    events = adapter.retrieve_events_after_cursor(100, 2)

    assert conn.executed[-1] == (QUERY_RETRIEVE_EVENTS_AFTER_CURSOR, (100, 2))
    assert [e.id for e in events] == ["evt-101", "evt-102"]
    assert events[0].ingest_seq == 101
    assert events[0].metadata["source"] == "api"
    assert events[0].data["count"] == 3
    assert events[1].ingest_seq == 102
    assert events[1].metadata["source"] == "worker"
    assert events[1].data["count"] == 4


def test_retrieve_events_by_principal_and_ingested_range():
    start = datetime(2026, 2, 8, 10, 0, tzinfo=timezone.utc)
    end = start + timedelta(minutes=10)
    rows = [
        ("evt-1", "user-1", "api.request", 1, start, start + timedelta(seconds=1),
         b'{"source":"api"}', b'{"count":1}', 1),
        ("evt-2", "user-1", "api.request", 1, start + timedelta(minutes=1),
         start + timedelta(minutes=1, seconds=1), b'{"source":"worker"}', b'{"count":2}', 2),
    ]
    conn = FakeConnection(results=[rows])
    adapter = EventAdapter(conn)

    events = adapter.retrieve_events_by_principal_and_ingested_range("user-1", start, end, 100)

    assert conn.executed[-1] == (
        QUERY_RETRIEVE_EVENTS_BY_PRINCIPAL_INGESTED_RANGE,
        ("user-1", start, end, 100),
    )
    assert [e.id for e in events] == ["evt-1", "evt-2"]
    assert events[1].data["count"] == 2


def test_retrieve_scoped_events_after_cursor():
    start = datetime(2026, 2, 8, 0, 0, tzinfo=timezone.utc)
    end = start + timedelta(hours=1)
    rows = [
        ("evt-43", "user-1", "api.request", 1, start + timedelta(minutes=10),
         start + timedelta(minutes=10, seconds=1), '{"trace_id":"trace-1"}', '{"count":1}', 43),
    ]
    conn = FakeConnection(results=[rows])
    adapter = EventAdapter(conn)

    events = adapter.retrieve_scoped_events_after_cursor(
        42, "user-1", "api.request", start, end, 5000
    )

    assert conn.executed[-1] == (
        QUERY_RETRIEVE_SCOPED_EVENTS_AFTER_CURSOR,
        (42, "user-1", "api.request", start, end, 5000),
    )
    assert len(events) == 1
    assert events[0].id == "evt-43"
    assert events[0].ingest_seq == 43
    assert events[0].metadata["trace_id"] == "trace-1"
    assert events[0].data["count"] == 1


def test_retrieve_events_after_uses_time_query():
    conn = FakeConnection(results=[[]])
    adapter = EventAdapter(conn)

    events = adapter.retrieve_events_after(NOW, 10)

    assert events == []
    assert conn.executed[-1] == (QUERY_RETRIEVE_EVENTS_AFTER, (NOW, 10))


def test_retrieve_query_error_is_wrapped():
    failure = RuntimeError("db failure")
    conn = FakeConnection(results=[failure])
    adapter = EventAdapter(conn)

    with pytest.raises(StorageError, match="failed to query events by cursor") as info:
        adapter.retrieve_events_after_cursor(0, 10)
    assert info.value.__cause__ is failure


def test_close_returns_db_close_error():
    failure = RuntimeError("db close failed")
    conn = FakeConnection(close_error=failure)
    adapter = EventAdapter(conn)

    with pytest.raises(StorageError, match="failed to close database") as info:
        adapter.close()
    assert info.value.__cause__ is failure


def test_close_closes_connection():
    conn = FakeConnection()
    with EventAdapter(conn):
        pass
    assert conn.closed is True


def test_missing_events_table_rejected():
    with pytest.raises(StorageError, match="events table does not exist"):
        EventAdapter(FakeConnection(schema_exists=False))


def test_validate_schema_accepts_existing_table():
    conn = FakeConnection()
    validate_schema(conn)
    assert "information_schema" in conn.executed[0][0]


def test_marshal_event_json_empty_metadata_is_null():
    metadata_json, data_json = marshal_event_json(make_event(metadata={}, data={"a": 1}))
    assert metadata_json is None
    assert json.loads(data_json) == {"a": 1}


def test_scan_event_row_wrong_width():
    with pytest.raises(StorageError, match="failed to scan event row"):
        scan_event_row(("evt-1", "user-1"))


def test_scan_event_row_bad_data_json():
    row = ("evt-1", "user-1", "t", 1, NOW, NOW, None, b"not json", 5)
    with pytest.raises(StorageError, match="failed to unmarshal data"):
        scan_event_row(row)


def test_scan_event_row_null_metadata_gives_empty_mapping():
    row = ("evt-1", "user-1", "t", 1, NOW, NOW, None, b'{"x": 2}', 5)
    event = scan_event_row(row)
    assert event.metadata == {}
    assert event.data == {"x": 2}
    assert event.ingest_seq == 5


def test_marshal_round_trips_through_scan():
    event = make_event()
    metadata_json, data_json = marshal_event_json(event)
    row = (event.id, event.principal_id, event.type, event.schema_version,
           event.occurred_at, event.ingested_at, metadata_json, data_json, 7)
    scanned = scan_event_row(row)
    assert scanned.metadata == event.metadata
    assert scanned.data == event.data
    assert scanned.id == event.id