"""Window sizes, duration parsing and bucket truncation."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from fractions import Fraction

_UNIT_NANOS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_COMPONENT = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_DAYS = re.compile(r"([+-]?\d+)d")


@dataclass(frozen=True)
class WindowSpec:
    """A parsed and validated window size."""

    size: timedelta


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"1h30m"``, ``"1.5s"`` or ``"-2m"``."""
    if not text:
        raise ValueError(f"invalid duration {text!r}")
    body = text
    negative = False
    if body[0] in "+-":
        negative = body[0] == "-"
        body = body[1:]
    if body == "0":
        return timedelta(0)
    if not body:
        raise ValueError(f"invalid duration {text!r}")

    total = Fraction(0)
    pos = 0
    while pos < len(body):
        match = _COMPONENT.match(body, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        total += Fraction(Decimal(match.group(1))) * _UNIT_NANOS[match.group(2)]
        pos = match.end()

    nanos = int(total)
    result = timedelta(
        seconds=nanos // 1_000_000_000,
        microseconds=(nanos % 1_000_000_000) / 1000,
    )
    return -result if negative else result


def parse_window_size(text: str) -> WindowSpec:
    """Parse a window size, accepting duration syntax plus ``"Nd"`` for days."""
    if not text:
        raise ValueError("window_size must not be empty")

    if len(text) > 1 and text.endswith("d"):
        match = _DAYS.match(text)
        if match is None:
            raise ValueError(f"invalid window_size {text!r}")
        days = int(match.group(1))
        if days <= 0:
            raise ValueError(f"window_size must be positive, got {text!r}")
        return WindowSpec(size=timedelta(days=days))

    try:
        size = parse_duration(text)
    except ValueError as exc:
        raise ValueError(f"invalid window_size {text!r}: {exc}") from exc
    if size <= timedelta(0):
        raise ValueError(f"window_size must be positive, got {text!r}")
    return WindowSpec(size=size)


def bucket_for(moment: datetime, granularity: timedelta) -> datetime:
    """Round ``moment`` down to a multiple of ``granularity`` since year 1.

    Aware datetimes are truncated on their absolute (UTC) time and returned
    in their original zone.
    """
    if granularity <= timedelta(0):
        return moment
    if moment.tzinfo is None:
        base = datetime(1, 1, 1)
        return moment - (moment - base) % granularity
    utc_moment = moment.astimezone(timezone.utc)
    base = datetime(1, 1, 1, tzinfo=timezone.utc)
    truncated = utc_moment - (utc_moment - base) % granularity
    return truncated.astimezone(moment.tzinfo)