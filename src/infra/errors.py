"""Custom exception hierarchy for Lorekeeper.

All application-specific exceptions inherit from LorekeeperError,
which carries an error code that outer layers map to their own status codes.
"""

from __future__ import annotations

from typing import Any


class LorekeeperError(Exception):
    """Base exception for all Lorekeeper errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ValidationError(LorekeeperError):
    """Malformed input: importance out of range, unknown category, empty content.

    Always surfaced to the caller, never retried.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "VALIDATION_ERROR",
        details: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.details = details or []


class NotFoundError(LorekeeperError):
    """Memory entry or session absent (or soft-deleted)."""

    def __init__(self, message: str, *, code: str = "NOT_FOUND") -> None:
        super().__init__(message, code=code)


class DependencyError(LorekeeperError):
    """Embedding or extraction/summarization provider unreachable or timed out.

    Raised after the bounded retry budget is exhausted. When the failing
    operation still persisted a record (e.g. a memory without embedding),
    entry_id identifies it so the caller can backfill later.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "DEPENDENCY_ERROR",
        entry_id: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.entry_id = entry_id


class StorageError(LorekeeperError):
    """Storage backend cannot serve the requested operation."""

    def __init__(self, message: str, *, code: str = "STORAGE_ERROR") -> None:
        super().__init__(message, code=code)


def from_pydantic(exc: Any, *, context: str) -> ValidationError:
    """Convert a pydantic ValidationError into the domain ValidationError."""
    details = [
        {"loc": ".".join(str(p) for p in err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    summary = "; ".join(f"{d['loc']}: {d['msg']}" for d in details) or str(exc)
    return ValidationError(f"Invalid {context}: {summary}", details=details)
