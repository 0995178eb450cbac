from __future__ import annotations

from typing import Final

# Callers branch on these typed errors instead of parsing messages.
# Keep this list minimal and grow it only when a new type is actually emitted.
KNOWN_ERROR_TYPES: Final[set[str]] = {
    "BACKEND_FAILED",
    "INVALID_ARGUMENT",
    "NOT_FOUND",
    "TOOL_MISSING",
}


def assert_known_error_type(error_type: str) -> None:
    if error_type not in KNOWN_ERROR_TYPES:
        raise ValueError(f"Unknown error type: {error_type!r}. Add it to bddrun.core.error_types.KNOWN_ERROR_TYPES.")


class ValidationError(ValueError):
    """A run request was rejected before any process was started."""

    error_type = "INVALID_ARGUMENT"

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class DuplicateExecutionError(ValueError):
    error_type = "INVALID_ARGUMENT"

    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution id already exists: {execution_id}")
        self.execution_id = execution_id
