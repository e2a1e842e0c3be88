"""Events and the interface for storing and retrieving them."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class DuplicateEventError(Exception):
    """An event with the same (principal_id, id) already exists."""

    def __init__(self, message: str = "event already exists") -> None:
        super().__init__(message)


@dataclass
class Event:
    """A single ingested event."""

    id: str
    principal_id: str
    type: str
    data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)
    schema_version: int = 0
    occurred_at: datetime | None = None
    ingested_at: datetime | None = None
    ingest_seq: int = 0


class EventStore(abc.ABC):
    """Storage of events, ordered by their ingest sequence."""

    @abc.abstractmethod
    def save_event(self, event: Event) -> None:
        """Persist ``event``; raise DuplicateEventError if it already exists."""

    @abc.abstractmethod
    def retrieve_events_after(self, after_time: datetime, limit: int) -> list[Event]:
        """Return events ingested after ``after_time``. Prefer the cursor form."""

    @abc.abstractmethod
    def retrieve_events_by_principal_and_ingested_range(
        self,
        principal_id: str,
        start_ingested_at: datetime,
        end_ingested_at: datetime,
        limit: int,
    ) -> list[Event]:
        """Return one principal's events within an ingested_at range."""

    @abc.abstractmethod
    def retrieve_events_after_cursor(self, cursor: int, limit: int) -> list[Event]:
        """Return events with ingest_seq above ``cursor``, in ingest order."""

    @abc.abstractmethod
    def retrieve_scoped_events_after_cursor(
        self,
        cursor: int,
        principal_id: str,
        event_type: str,
        start_occurred_at: datetime,
        end_occurred_at: datetime,
        limit: int,
    ) -> list[Event]:
        """Return events after ``cursor`` for one principal, type and time range."""