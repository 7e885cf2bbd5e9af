"""Query execution through pooled connections and portable cell conversion."""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from datetime import date, datetime, time as time_of_day
from typing import Any, Protocol

import asyncpg

from .errors import classify_driver_error
from .models import JsonValue, QueryResult
from .sqlguard import SqlGuard

LOG = logging.getLogger(__name__)

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


class CellTypeMismatch(Exception):
    """Raised by an extractor when a value is not of its type."""


class QueryPool(Protocol):
    """Anything that lends out connections, e.g. ``TargetPool``."""

    def acquire(self) -> AbstractAsyncContextManager[Any]: ...


# -- cell extraction -------------------------------------------------
#
# Each extractor either returns the portable value or raises
# CellTypeMismatch. A null succeeds on the first extractor tried.


def _extract_text(value: object) -> JsonValue:
    if value is None or isinstance(value, str):
        return value
    raise CellTypeMismatch


def _extract_integer(value: object) -> JsonValue:
    if isinstance(value, int) and not isinstance(value, bool) and INT64_MIN <= value <= INT64_MAX:
        return value
    raise CellTypeMismatch


def _extract_float(value: object) -> JsonValue:
    if isinstance(value, float):
        # JSON has no NaN or infinity.
        return value if math.isfinite(value) else None
    raise CellTypeMismatch


def _extract_boolean(value: object) -> JsonValue:
    if isinstance(value, bool):
        return value
    raise CellTypeMismatch


def _extract_semi_structured(value: object) -> JsonValue:
    if isinstance(value, dict):
        return value
    if isinstance(value, (list, tuple)):
        return [convert_cell(item) for item in value]
    raise CellTypeMismatch


CELL_EXTRACTORS: tuple[tuple[str, Callable[[object], JsonValue]], ...] = (
    ("text", _extract_text),
    ("integer", _extract_integer),
    ("float", _extract_float),
    ("boolean", _extract_boolean),
    ("json", _extract_semi_structured),
)


def _text_of(value: object) -> str:
    if isinstance(value, (bytes, bytearray, memoryview)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CellTypeMismatch from exc
    if isinstance(value, (datetime, date, time_of_day)):
        return value.isoformat()
    return str(value)


def convert_cell(value: object) -> JsonValue:
    """Map one driver value to a JSON-compatible value.

    Typed extractors run in the fixed order of ``CELL_EXTRACTORS``. When none
    matches, the value's text is parsed as a JSON object/array, then kept as
    plain text, and finally reported as null.
    """

    for _tag, extract in CELL_EXTRACTORS:
        try:
            return extract(value)
        except CellTypeMismatch:
            continue
    try:
        text = _text_of(value)
    except CellTypeMismatch:
        return None
    try:
        parsed = json.loads(text)
    except ValueError:
        return text
    if isinstance(parsed, (dict, list)):
        return parsed
    return text


def convert_row(values: Sequence[object]) -> tuple[JsonValue, ...]:
    return tuple(convert_cell(value) for value in values)


# -- executor --------------------------------------------------------


class QueryExecutor:
    """Runs validated, row-capped SQL against a pooled PostgreSQL connection."""

    def __init__(self, guard: SqlGuard | None = None) -> None:
        self._guard = guard or SqlGuard()

    async def execute(self, pool: QueryPool, sql: str) -> QueryResult:
        async with pool.acquire() as conn:
            started = time.perf_counter()
            try:
                records = await conn.fetch(sql)
            except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
                elapsed_ms = int((time.perf_counter() - started) * 1000)
                raise classify_driver_error(exc, elapsed_ms=elapsed_ms) from exc
            elapsed_ms = int((time.perf_counter() - started) * 1000)

            if records:
                columns = tuple(str(key) for key in records[0].keys())
            else:
                columns = await self._probe_columns(conn, sql)

        rows = tuple(convert_row(tuple(record.values())) for record in records)
        LOG.debug("Query finished", extra={"row_count": len(rows), "elapsed_ms": elapsed_ms})
        return QueryResult(columns=columns, rows=rows, execution_time_ms=elapsed_ms)

    async def _probe_columns(self, conn: Any, sql: str) -> tuple[str, ...]:
        """Recover column names of an empty result from a zero-row statement."""

        probe = self._guard.zero_row_query(sql)
        try:
            statement = await conn.prepare(probe)
            attributes = statement.get_attributes()
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            LOG.debug("Column probe failed", extra={"error": str(exc)})
            return ()
        return tuple(attribute.name for attribute in attributes)


__all__ = [
    "CELL_EXTRACTORS",
    "CellTypeMismatch",
    "QueryExecutor",
    "QueryPool",
    "convert_cell",
    "convert_row",
]
