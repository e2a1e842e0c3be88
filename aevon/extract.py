"""Extraction of numeric values from event data."""

from __future__ import annotations

import math
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

_DECIMAL_TEXT = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def extract_decimal(data: Mapping[str, Any] | None, field: str) -> Decimal:
    """Return the numeric value of ``data[field]`` as a Decimal.

    Yields zero when the field is empty or missing, or when the value is not
    a number or a numeric string.
    """
    if not field or not data:
        return Decimal(0)
    value = data.get(field)
    if isinstance(value, bool):
        return Decimal(0)
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return Decimal(0)
        return Decimal(repr(value))
    if isinstance(value, Decimal):
        return value if value.is_finite() else Decimal(0)
    if isinstance(value, str) and _DECIMAL_TEXT.fullmatch(value):
        try:
            return Decimal(value)
        except InvalidOperation:
            return Decimal(0)
    return Decimal(0)