"""Error taxonomy and error description helpers.

Mutation failures are recovered by rollback and then raised to the caller
as ``MutationFailed``.  Feed failures are never raised: they surface as a
connection transition and are recovered by resynchronization.
"""

from __future__ import annotations

from dataclasses import dataclass

# Authority error codes that mean "the row-level policy refused this".
ACCESS_DENIED_CODES: frozenset[str] = frozenset({"PGRST301", "42501"})


@dataclass(frozen=True)
class ErrorInfo:
    code: str
    message: str
    is_access_denied: bool


class FeedSyncError(Exception):
    """Base class for all feedsync errors."""


class ValidationError(FeedSyncError):
    """Raised for bad input.  Never reaches the network; no state change."""


class MutationInFlight(ValidationError):
    """Raised when a mutation is already pending for the target id."""

    def __init__(self, target_id: str) -> None:
        super().__init__(f"A mutation is already pending for '{target_id}'")
        self.target_id = target_id


class MutationFailed(FeedSyncError):
    """The authority rejected a mutation, or the transport failed.

    Raised only after the optimistic effect has been rolled back.
    """

    def __init__(self, kind: str, cause: BaseException) -> None:
        self.kind = kind
        self.cause = cause
        self.info = describe_error(cause)
        super().__init__(f"{kind} failed: {self.info.message}")


class FetchFailed(FeedSyncError):
    """A page fetch failed.  The cache is unchanged; the caller may retry."""

    def __init__(self, feed_key: str, cursor: str | None, cause: BaseException) -> None:
        self.feed_key = feed_key
        self.cursor = cursor
        self.cause = cause
        self.info = describe_error(cause)
        where = f"after {cursor}" if cursor else "first page"
        super().__init__(f"fetch of '{feed_key}' ({where}) failed: {self.info.message}")


class SubscriptionLost(FeedSyncError):
    """The live feed for a feed key dropped.

    Handed to logging and connection listeners, never raised to callers.
    """

    def __init__(self, feed_key: str, cause: BaseException | None = None) -> None:
        self.feed_key = feed_key
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"subscription to '{feed_key}' lost{detail}")


def _error_code(error: object) -> str | None:
    if isinstance(error, dict):
        code = error.get("code")
    else:
        code = getattr(error, "code", None)
    return str(code) if code is not None else None


def is_access_denied(error: object) -> bool:
    """Return ``True`` if *error* carries an access-denied code."""
    if error is None:
        return False
    return _error_code(error) in ACCESS_DENIED_CODES


def describe_error(error: object) -> ErrorInfo:
    """Reduce any error into an ``ErrorInfo`` suitable for display.

    Coded errors (exceptions or dicts with a ``code``) keep their code;
    access-denied codes get a fixed message so policy details do not leak.
    """
    code = _error_code(error)
    if code is not None:
        if code in ACCESS_DENIED_CODES:
            return ErrorInfo(code=code, message="Access denied", is_access_denied=True)
        if isinstance(error, dict):
            message = str(error.get("message", "An unexpected error occurred"))
        else:
            message = getattr(error, "message", None) or str(error)
        return ErrorInfo(code=code, message=message, is_access_denied=False)

    if isinstance(error, BaseException):
        return ErrorInfo(code="UNKNOWN", message=str(error), is_access_denied=False)

    return ErrorInfo(
        code="UNKNOWN",
        message="An unexpected error occurred",
        is_access_denied=False,
    )
