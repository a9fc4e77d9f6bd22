from __future__ import annotations

from typing import Any


class AnalyticsError(Exception):
    """Base error for the analytics core."""


class NotFoundError(AnalyticsError):
    """Raised when a referenced entity (company, contact) does not exist."""

    def __init__(self, entity_kind: str, entity_id: Any) -> None:
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        super().__init__(f"{entity_kind.capitalize()} not found")


class InvalidRangeError(AnalyticsError):
    """Raised when a caller-supplied filter violates an ordering constraint."""

    def __init__(self, field: str, lower: Any, upper: Any, message: str | None = None) -> None:
        self.field = field
        self.lower = lower
        self.upper = upper
        super().__init__(message or f"Invalid range for '{field}': {lower} is greater than {upper}")


class ComputationFallbackError(AnalyticsError):
    """Never raised.

    Division by zero and empty collections degrade to 0 / [] throughout the
    analytics core; this type exists so the degradation is a named contract.
    """
