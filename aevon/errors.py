"""HTTP error types and the error response body."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    """Machine-readable error categories returned to clients."""

    INTERNAL = "internal_error"
    INVALID_JSON = "invalid_json"
    SCHEMA_NOT_FOUND = "schema_not_found"
    SCHEMA_VALIDATION = "schema_validation_failed"
    DUPLICATE_EVENT = "duplicate_event"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ErrorResponse:
    """Error response body; ``details`` is omitted when None."""

    error_type: ErrorType | str
    message: str
    details: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready body."""
        kind = self.error_type
        body: dict[str, Any] = {
            "error_type": kind.value if isinstance(kind, ErrorType) else kind,
            "message": self.message,
        }
        if self.details is not None:
            body["details"] = self.details
        return body