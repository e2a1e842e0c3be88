# aevon

`aevon` turns a stream of usage events into durable, time-bucketed
aggregates. Events are stored with a strictly increasing ingest sequence;
a batch job reads everything after the last checkpoint, folds the events
through a set of declarative rules and hands the resulting aggregates and
the new checkpoint to a store that writes them together, so a crash between
the two can never count an event twice.

## Concepts

- **Event** (`aevon.storage.Event`) – one usage record: an id, the
  principal it belongs to, an event type, a schema version, when it
  occurred, when it was ingested, metadata, a `data` mapping and the
  `ingest_seq` assigned by the store.
- **Aggregation rule** (`aevon.rules.AggregationRule`) – matches events by
  type and reduces one field of their data with an operator: `count`,
  `sum`, `min` or `max` (`aevon.aggregators.Operator`).
- **Aggregate** – the reduced value for one principal, one rule and one
  time bucket, keyed by an `AggregateKey` and held in an `AggregateState`
  (both in `aevon.aggregators`).
- **Checkpoint** – the last ingest sequence already folded into the stored
  aggregates, tracked per bucket label such as `"1m"`.

## Rules

Each rule lives in its own `.yaml` or `.yml` file in a rules directory:

```yaml
name: "sum_bytes"
source_event: "api.request"
operator: "sum"
field: "bytes"
```

`field` may be left out for `count`. `window_size`, if given, must be
`1m`. Files that are empty, hold only comments or have no `name` are
skipped. A missing directory means no rules; an unknown operator, an empty
`source_event` or a rule name used twice raises `RuleLoadError`. Each rule
carries a SHA-256 fingerprint of its file's bytes.

```python
from aevon.rules import FileSystemRuleRepository

repo = FileSystemRuleRepository("./config/aggregations")
rules = repo.get_rules()
request_rules = repo.list("api.request")
rule = repo.get("sum_bytes")          # RuleNotFoundError if absent
```

## Running a batch

`run_batch_aggregation` takes an event store (an `aevon.storage.EventStore`)
and a pre-aggregate store (an `aevon.batch.PreAggregateStore`). It reads the
checkpoint for the bucket label, fetches up to `batch_size` events after it,
builds the aggregates, flushes them with the last event's `ingest_seq` as the
new checkpoint, and returns the number of events processed.

```python
from aevon.batch import default_batch_job_options, run_batch_aggregation

options = default_batch_job_options()   # batch_size=50000, 1-minute buckets labelled "1m"
processed = run_batch_aggregation(event_store, pre_agg_store, rules, options)
```

`BatchJobParameter.normalized()` replaces unset values with defaults and
derives a label such as `"10m"` or `"1d"` from the bucket size
(`window_size_label`). Events are grouped by principal, each group is
reduced in event order, and partial results for the same key are merged
with `merge_value_by_operator`. The reduction runs in the calling thread;
`worker_count` is carried in the options but does not start threads.
`build_pre_aggregates` exposes the reduction on its own.

To keep aggregates current, run a `Scheduler`. It drains the backlog once
on start, then on every interval, and once more (for at most 30 seconds)
after the stop event is set:

```python
import threading
from datetime import timedelta
from aevon.scheduler import Scheduler

stop = threading.Event()
scheduler = Scheduler(timedelta(minutes=2), event_store, pre_agg_store, rules, options)
threading.Thread(target=scheduler.start, args=(stop,)).start()
...
stop.set()
```

`Scheduler.drain_backlog` keeps running batches until one comes back
short, a batch fails (the error is logged), the stop event is set, or 100
consecutive batches have run; it returns the number of batches run.

## PostgreSQL

`aevon.postgres_events.EventAdapter` and
`aevon.postgres_preaggregates.PreAggregateAdapter` implement the two stores
over an open DB-API connection that you create and pass in; the queries use
`%s` / `%(name)s` placeholders. `EventAdapter` checks on construction that
an `events` table exists and raises `StorageError` otherwise; `save_event`
raises `DuplicateEventError` when `(principal_id, id)` already exists and
sets `ingest_seq` on success. `PreAggregateAdapter.flush` locks the
checkpoint row, skips a flush whose cursor is not past the stored one,
rejects aggregates whose bucket label differs from the flush's, and commits
aggregates and checkpoint in one transaction. `query_range` and
`query_range_with_checkpoint` always read partition 0.

## Configuration

`aevon.config.load(path)` starts from defaults, overlays a YAML file if
`path` is given, then `AEVON_*` environment variables, validates the
result, and loads the aggregation rules from `aggregation.config_dir` into
`cfg.rule_loading.rules`. A double underscore in a variable name separates
section from key, so `AEVON_SERVER__PORT=9090` sets `server.port`.

| key | default |
| --- | --- |
| `server.port` | `8080` |
| `server.host` | `0.0.0.0` |
| `server.max_body_size_mb` | `1` |
| `server.mode` | `release` (`debug` or `release`) |
| `database.type` | `postgres` |
| `database.dsn` | `aevon.db` |
| `database.max_open_conns` | `25` |
| `database.max_idle_conns` | `25` |
| `database.auto_migrate` | `true` |
| `schema.source_type` | `filesystem` |
| `schema.path` | `./schemas` (must exist) |
| `aggregation.config_dir` | `./config/aggregations` |
| `aggregation.require_rules` | `false` |
| `aggregation.enabled` | `true` |
| `aggregation.cron_interval` | `2m` |
| `aggregation.sweep_interval` | empty (older name for `cron_interval`) |
| `aggregation.batch_size` | `50000` |
| `aggregation.worker_count` | `10` |
| `aggregation.channel_buffer_size` | `1024` |

Invalid settings, unreadable files and rule errors raise `ConfigError`.

## Helpers

```python
from datetime import datetime, timezone
from aevon.windows import parse_window_size, parse_duration, bucket_for
from aevon.partition import partition_for
from aevon.extract import extract_decimal

spec = parse_window_size("7d")                 # 30s, 5m, 1h, or Nd; must be positive
parse_duration("1h30m")                        # timedelta(hours=1, minutes=30)
start = bucket_for(datetime(2026, 2, 3, 10, 35, 42, tzinfo=timezone.utc), spec.size)
partition_for("tenant-abc")                    # stable FNV-32a value in range(256)
extract_decimal({"bytes": 12.5}, "bytes")      # Decimal("12.5"); missing or non-numeric -> 0
```

`aevon.errors.ErrorResponse(error_type, message, details)` models an error
body; `to_dict()` gives `error_type`, `message` and, when not None,
`details`. `ErrorType` lists the error categories.

## What is not included

This package is a library. It has no command-line program, no HTTP server
or ingestion endpoints, no event schema registry or validation of event
data, and no database migrations: the `events`, `pre_aggregates` and
`sweep_checkpoints` tables must already exist, and no database driver is
bundled.