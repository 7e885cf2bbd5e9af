"""Error taxonomy shared by the query pipeline."""

from __future__ import annotations

import asyncio
import sqlite3

import asyncpg


class DbQueryError(RuntimeError):
    """Base error for every failure surfaced by dbquery."""

    code = "INTERNAL_ERROR"
    retryable = False


class ValidationError(DbQueryError):
    """Raised for malformed input: SQL, prompts, names or URLs."""

    code = "VALIDATION_ERROR"


class NotFoundError(DbQueryError):
    """Raised when a named connection is not registered."""

    code = "NOT_FOUND"


class DatabaseConnectionError(DbQueryError):
    """Raised when a target database cannot be reached in time."""

    code = "CONNECTION_ERROR"
    retryable = True

    def __init__(self, message: str, *, elapsed_ms: int | None = None) -> None:
        if elapsed_ms is not None:
            message = f"{message} (after {elapsed_ms} ms)"
        super().__init__(message)
        self.elapsed_ms = elapsed_ms


class DatabaseError(DbQueryError):
    """Raised when a store or target database rejects a well-formed operation."""

    code = "DATABASE_ERROR"


class InternalError(DbQueryError):
    """Raised for translation-service failures and malformed external responses."""

    code = "INTERNAL_ERROR"


_CONNECTION_FAILURES: tuple[type[BaseException], ...] = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresConnectionError,
    asyncpg.InvalidAuthorizationSpecificationError,
    asyncpg.CannotConnectNowError,
    asyncpg.TooManyConnectionsError,
    asyncpg.InterfaceError,
)


def is_connection_failure(exc: BaseException) -> bool:
    """Return True when the driver error means the target was not reachable."""

    return isinstance(exc, _CONNECTION_FAILURES)


def classify_driver_error(exc: BaseException, *, elapsed_ms: int | None = None) -> DbQueryError:
    """Translate an asyncpg/sqlite3/OS exception into the dbquery taxonomy."""

    if isinstance(exc, DbQueryError):
        return exc
    if is_connection_failure(exc):
        detail = str(exc) or exc.__class__.__name__
        return DatabaseConnectionError(f"Failed to reach database: {detail}", elapsed_ms=elapsed_ms)
    if isinstance(exc, asyncpg.PostgresError):
        return DatabaseError(str(exc))
    if isinstance(exc, sqlite3.Error):
        return DatabaseError(f"Bookkeeping store error: {exc}")
    return InternalError(str(exc))


__all__ = [
    "DatabaseConnectionError",
    "DatabaseError",
    "DbQueryError",
    "InternalError",
    "NotFoundError",
    "ValidationError",
    "classify_driver_error",
    "is_connection_failure",
]
