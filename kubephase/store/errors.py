"""Errors raised by object store bindings.

Every binding translates its transport errors into this hierarchy so that the
controllers can branch on not-found, conflict and already-exists without
knowing which backing store they talk to.
"""

from __future__ import annotations


class StoreError(Exception):
    """Base class for object store failures."""

    status: int = 500
    reason: str = "InternalError"

    def __init__(self, message: str, *, status: int | None = None, reason: str | None = None) -> None:
        super().__init__(message)
        if status is not None:
            self.status = status
        if reason is not None:
            self.reason = reason


class NotFoundError(StoreError):
    """The requested object does not exist."""

    status = 404
    reason = "NotFound"


class ConflictError(StoreError):
    """The write carried a stale resourceVersion."""

    status = 409
    reason = "Conflict"


class AlreadyExistsError(StoreError):
    """An object with the same name already exists."""

    status = 409
    reason = "AlreadyExists"


class GoneError(StoreError):
    """The watch resourceVersion is too old; the caller must relist."""

    status = 410
    reason = "Gone"


def error_for_status(status: int, reason: str, message: str) -> StoreError:
    """Map an API status code and reason onto the error hierarchy."""
    if status == 404:
        return NotFoundError(message)
    if status == 409:
        if reason == "AlreadyExists":
            return AlreadyExistsError(message)
        return ConflictError(message)
    if status == 410:
        return GoneError(message)
    return StoreError(message, status=status, reason=reason or "Unknown")


def with_context(exc: StoreError, context: str) -> StoreError:
    """Return a copy of *exc* of the same class with *context* prefixed to its message."""
    return type(exc)(f"{context}: {exc}", status=exc.status, reason=exc.reason)
