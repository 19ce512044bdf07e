"""Error kinds raised by the revision store and helpers for error payloads."""
from __future__ import annotations

from typing import Any


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class AuditError(Exception):
    """Base class for every error surfaced by the audit layer."""

    code = "AUDIT_ERROR"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_response(self) -> dict[str, Any]:
        return error_response(self.code, self.message, self.details or None)


class MissingActorError(AuditError):
    """No actor could be resolved for a write."""

    code = "MISSING_ACTOR"


class InvalidRevisionSequenceError(AuditError):
    """A change kind does not fit the identity's revision history."""

    code = "INVALID_REVISION_SEQUENCE"


class NotFoundError(AuditError):
    """An identity or revision does not exist."""

    code = "NOT_FOUND"


class ConcurrentWriteConflict(AuditError):
    """A concurrent commit made this unit of work fail; retry the whole operation."""

    code = "CONCURRENT_WRITE_CONFLICT"


class StorageError(AuditError):
    """The underlying store failed or aborted the transaction."""

    code = "STORAGE_FAILURE"


__all__ = [
    "error_response",
    "AuditError",
    "MissingActorError",
    "InvalidRevisionSequenceError",
    "NotFoundError",
    "ConcurrentWriteConflict",
    "StorageError",
]
