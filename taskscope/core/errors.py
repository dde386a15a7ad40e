"""Error kinds and classification for backing-store failures.

Driver exceptions are classified exactly once, where they are first observed
(the store adapter or the retry loop), into a ``StoreErrorKind``. Everything
downstream switches on the kind instead of re-inspecting messages.
"""

import asyncio
import sqlite3
from enum import Enum
from typing import Literal


class StoreErrorKind(Enum):
    """Closed set of backing-store failure kinds."""

    CONNECTION = "connection"
    TIMEOUT = "timeout"
    POOL_EXHAUSTED = "pool_exhausted"
    AUTH = "auth"
    VALIDATION = "validation"
    SYNTAX = "syntax"
    UNKNOWN = "unknown"

    @property
    def is_retryable(self) -> bool:
        """Whether an operation failing with this kind may be attempted again."""
        return self not in _NON_RETRYABLE_KINDS

    @property
    def is_connection(self) -> bool:
        """Whether this kind indicates the connection itself is unhealthy."""
        return self in _CONNECTION_KINDS


_NON_RETRYABLE_KINDS = frozenset({StoreErrorKind.AUTH, StoreErrorKind.VALIDATION, StoreErrorKind.SYNTAX})
_CONNECTION_KINDS = frozenset({StoreErrorKind.CONNECTION, StoreErrorKind.TIMEOUT, StoreErrorKind.POOL_EXHAUSTED})


class StoreError(Exception):
    """A backing-store failure tagged with its kind."""

    def __init__(self, message: str, *, kind: StoreErrorKind = StoreErrorKind.UNKNOWN) -> None:
        super().__init__(message)
        self.kind = kind


class StoreUnavailableError(StoreError):
    """Raised when no healthy connection to the store can be established."""

    def __init__(self, message: str = "Database connection unavailable") -> None:
        super().__init__(message, kind=StoreErrorKind.CONNECTION)


class RetryExhaustedError(StoreError):
    """Raised when an operation still fails after every allowed attempt."""

    def __init__(self, label: str, attempts: int, last_error: BaseException | None) -> None:
        last_kind = classify_store_error(last_error) if last_error is not None else StoreErrorKind.UNKNOWN
        super().__init__(
            f"{label} failed after {attempts} attempts. Last error: {last_error}",
            kind=last_kind,
        )
        self.label = label
        self.attempts = attempts


_ErrorPattern = Literal["pool", "auth", "validation", "syntax", "connection"]

# Checked in order: pool exhaustion is a connection problem with a more specific signature.
_ERROR_PATTERNS: dict[_ErrorPattern, dict[str, list[str] | set[str]]] = {
    "pool": {
        "phrases": [
            "too many connections",
            "connection pool exhausted",
            "max clients reached",
            "maxclientsinsessionmode",
            "remaining connection slots are reserved",
        ],
        "exception_types": set(),
    },
    "auth": {
        "phrases": [
            "authentication failed",
            "unauthorized",
            "permission denied",
            "not authorized",
            "access denied",
        ],
        "exception_types": {"PermissionError"},
    },
    "validation": {
        "phrases": [
            "constraint failed",
            "constraint violation",
            "unique constraint",
            "validation error",
            "datatype mismatch",
        ],
        "exception_types": {"IntegrityError", "ValidationError"},
    },
    "syntax": {
        "phrases": [
            "syntax error",
            "no such column",
            "no such table",
            "invalid query",
        ],
        "exception_types": set(),
    },
    "connection": {
        "phrases": [
            "connection",
            "unable to open database",
            "database is locked",
            "disk i/o error",
            "network",
            "econnrefused",
            "unreachable",
        ],
        "exception_types": {"ConnectionError", "ConnectionRefusedError", "ConnectionResetError", "BrokenPipeError"},
    },
}


def _match_error_pattern(*, error_str: str, exception_type: str, pattern_type: _ErrorPattern) -> bool:
    """Return True if the error matches the configured pattern type."""
    patterns = _ERROR_PATTERNS[pattern_type]
    return any(phrase in error_str for phrase in patterns["phrases"]) or exception_type in patterns["exception_types"]


def classify_store_error(exception: BaseException) -> StoreErrorKind:
    """Assign a ``StoreErrorKind`` to an exception raised by the store or driver.

    Already-classified ``StoreError`` instances keep their kind.

    Args:
        exception: The exception raised by a store operation

    Returns:
        The kind used by the retry policy
    """
    if isinstance(exception, StoreError):
        return exception.kind

    if isinstance(exception, TimeoutError | asyncio.TimeoutError):
        return StoreErrorKind.TIMEOUT

    error_str = str(exception).lower()
    exception_type = type(exception).__name__

    if _match_error_pattern(error_str=error_str, exception_type=exception_type, pattern_type="pool"):
        return StoreErrorKind.POOL_EXHAUSTED

    if _match_error_pattern(error_str=error_str, exception_type=exception_type, pattern_type="auth"):
        return StoreErrorKind.AUTH

    if _match_error_pattern(error_str=error_str, exception_type=exception_type, pattern_type="validation"):
        return StoreErrorKind.VALIDATION

    if _match_error_pattern(error_str=error_str, exception_type=exception_type, pattern_type="syntax"):
        return StoreErrorKind.SYNTAX

    if "timeout" in error_str or "timed out" in error_str:
        return StoreErrorKind.TIMEOUT

    if _match_error_pattern(error_str=error_str, exception_type=exception_type, pattern_type="connection"):
        return StoreErrorKind.CONNECTION

    if isinstance(exception, sqlite3.OperationalError):
        return StoreErrorKind.CONNECTION

    return StoreErrorKind.UNKNOWN


def as_store_error(exception: BaseException, *, context: str) -> StoreError:
    """Wrap a driver exception in a classified ``StoreError``."""
    if isinstance(exception, StoreError):
        return exception
    return StoreError(f"{context}: {exception}", kind=classify_store_error(exception))
