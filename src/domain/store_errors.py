from __future__ import annotations

from typing import Any


UNIQUE_VIOLATION_CODE = "23505"


class StoreError(RuntimeError):
    """A write the reconciler depends on did not take effect."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation


def is_unique_violation(exc: Exception) -> bool:
    # PostgREST surfaces Postgres error codes on APIError; fall back to the message text.
    code: Any = getattr(exc, "code", None)
    if code is not None and str(code) == UNIQUE_VIOLATION_CODE:
        return True
    text = str(exc).lower()
    return "duplicate" in text or "unique" in text
