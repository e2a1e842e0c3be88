"""Periodic runner that drains pending events through batch aggregation."""

from __future__ import annotations

import logging
import threading
import time
from datetime import timedelta
from typing import Callable, Iterable

from aevon.batch import BatchJobParameter, PreAggregateStore, run_batch_aggregation
from aevon.rules import AggregationRule
from aevon.storage import EventStore

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_BATCHES = 100
SHUTDOWN_DRAIN_TIMEOUT = timedelta(seconds=30)


class Scheduler:
    """Runs batch aggregation for one bucket size on a fixed interval.

    Each tick starts again from the stored checkpoint, so the scheduler keeps
    no state of its own between runs.
    """

    def __init__(
        self,
        interval: timedelta,
        event_store: EventStore,
        pre_agg_store: PreAggregateStore,
        rules: Iterable[AggregationRule],
        options: BatchJobParameter | None = None,
    ) -> None:
        self.interval = interval
        self.event_store = event_store
        self.pre_agg_store = pre_agg_store
        self.rules = list(rules)
        self.options = (options or BatchJobParameter()).normalized()

    def start(self, stop_event: threading.Event) -> None:
        """Drain on every tick until ``stop_event`` is set, then drain once more."""
        label = self.options.bucket_label
        logger.info(
            "[Scheduler] Starting batch aggregation scheduler interval=%s "
            "bucket_size=%s batch_size=%d workers=%d",
            self.interval,
            label,
            self.options.batch_size,
            self.options.worker_count,
        )

        self.drain_backlog(stop_event)

        wait_seconds = max(self.interval.total_seconds(), 0.0)
        while not stop_event.wait(wait_seconds):
            self.drain_backlog(stop_event)

        logger.info("[Scheduler] Stopping bucket_size=%s", label)
        deadline = time.monotonic() + SHUTDOWN_DRAIN_TIMEOUT.total_seconds()
        logger.info("[Scheduler] Running final drain before shutdown bucket_size=%s", label)
        self._drain(lambda: time.monotonic() >= deadline)
        logger.info("[Scheduler] Final drain complete bucket_size=%s", label)

    def drain_backlog(self, stop_event: threading.Event | None = None) -> int:
        """Run batches until one comes back short; return how many batches ran.

        Stops early when ``stop_event`` is set, when a batch fails, or after
        a fixed number of consecutive batches.
        """
        return self._drain(stop_event.is_set if stop_event is not None else lambda: False)

    def _drain(self, should_stop: Callable[[], bool]) -> int:
        label = self.options.bucket_label
        batches = 0
        while batches < MAX_CONSECUTIVE_BATCHES:
            if should_stop():
                logger.info(
                    "[Scheduler] Drain interrupted bucket_size=%s batches_processed=%d",
                    label,
                    batches,
                )
                return batches

            try:
                processed = run_batch_aggregation(
                    self.event_store, self.pre_agg_store, self.rules, self.options
                )
            except Exception:
                logger.exception(
                    "[Scheduler] Batch aggregation failed bucket_size=%s batch_number=%d",
                    label,
                    batches + 1,
                )
                return batches

            batches += 1
            if processed < self.options.batch_size:
                if batches > 1:
                    logger.info(
                        "[Scheduler] Backlog drained bucket_size=%s total_batches=%d",
                        label,
                        batches,
                    )
                return batches

            logger.info(
                "[Scheduler] Backlog detected, continuing to drain bucket_size=%s batches_so_far=%d",
                label,
                batches,
            )

        logger.warning(
            "[Scheduler] Max consecutive batches reached, pausing drain "
            "bucket_size=%s max_batches=%d; will resume on next tick",
            label,
            MAX_CONSECUTIVE_BATCHES,
        )
        return batches