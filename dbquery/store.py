"""SQLite bookkeeping store for connection records and cached schema rows.

Every read and write goes through one lock. Callers must never hold it
across network I/O; the methods here only touch the local database file.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import DatabaseError
from .models import ConnectionRecord

LOG = logging.getLogger(__name__)

TABLE_KIND = "table"
VIEW_KIND = "view"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS databases (
        name TEXT PRIMARY KEY NOT NULL,
        url TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS schema_metadata (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        db_name TEXT NOT NULL,
        table_name TEXT NOT NULL,
        table_type TEXT NOT NULL,
        metadata_json TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (db_name) REFERENCES databases(name),
        UNIQUE(db_name, table_name, table_type)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_schema_metadata_db_name ON schema_metadata(db_name)",
)


@dataclass(frozen=True, slots=True)
class SchemaRow:
    """One cached table or view, stored as a JSON blob."""

    object_name: str
    object_kind: str
    payload: dict[str, Any]
    updated_at: datetime


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


class CatalogStore:
    """Embedded store holding the ``databases`` and ``schema_metadata`` tables."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path) if str(path) != ":memory:" else path
        self._lock = threading.Lock()
        self._connection = self._connect()
        self._initialize_schema()

    @property
    def path(self) -> Path | str:
        return self._path

    def close(self) -> None:
        with self._lock:
            self._connection.close()

    # -- connections -------------------------------------------------

    def get_connection(self, name: str) -> ConnectionRecord | None:
        with self._guard() as conn:
            row = conn.execute(
                "SELECT name, url, created_at, updated_at FROM databases WHERE name = ?",
                (name,),
            ).fetchone()
        return _to_record(row) if row else None

    def list_connections(self) -> list[ConnectionRecord]:
        with self._guard() as conn:
            rows = conn.execute(
                "SELECT name, url, created_at, updated_at FROM databases ORDER BY name"
            ).fetchall()
        return [_to_record(row) for row in rows]

    def upsert_connection(self, name: str, url: str) -> ConnectionRecord:
        now = utc_now().isoformat()
        with self._guard() as conn:
            with conn:
                updated = conn.execute(
                    "UPDATE databases SET url = ?, updated_at = ? WHERE name = ?",
                    (url, now, name),
                ).rowcount
                if updated == 0:
                    conn.execute(
                        "INSERT INTO databases (name, url, created_at, updated_at) VALUES (?, ?, ?, ?)",
                        (name, url, now, now),
                    )
            row = conn.execute(
                "SELECT name, url, created_at, updated_at FROM databases WHERE name = ?",
                (name,),
            ).fetchone()
        return _to_record(row)

    def delete_connection(self, name: str) -> bool:
        """Delete ``name`` and its cached schema rows; False when it did not exist."""

        with self._guard() as conn:
            with conn:
                deleted = conn.execute("DELETE FROM databases WHERE name = ?", (name,)).rowcount
                if deleted:
                    conn.execute("DELETE FROM schema_metadata WHERE db_name = ?", (name,))
        return bool(deleted)

    # -- schema cache ------------------------------------------------

    def read_schema_rows(self, db_name: str) -> list[SchemaRow]:
        with self._guard() as conn:
            rows = conn.execute(
                """
                SELECT table_name, table_type, metadata_json, updated_at
                FROM schema_metadata
                WHERE db_name = ?
                ORDER BY table_type, table_name
                """,
                (db_name,),
            ).fetchall()
        try:
            return [
                SchemaRow(
                    object_name=name,
                    object_kind=kind,
                    payload=json.loads(payload),
                    updated_at=datetime.fromisoformat(updated_at),
                )
                for name, kind, payload, updated_at in rows
            ]
        except ValueError as exc:
            raise DatabaseError(f"Corrupt schema cache for '{db_name}': {exc}") from exc

    def replace_schema_rows(self, db_name: str, rows: Sequence[SchemaRow]) -> None:
        """Swap every cached row for ``db_name`` in a single transaction."""

        with self._guard() as conn:
            with conn:
                conn.execute("DELETE FROM schema_metadata WHERE db_name = ?", (db_name,))
                conn.executemany(
                    """
                    INSERT INTO schema_metadata (db_name, table_name, table_type, metadata_json, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            db_name,
                            row.object_name,
                            row.object_kind,
                            json.dumps(row.payload),
                            row.updated_at.isoformat(),
                        )
                        for row in rows
                    ],
                )

    def clear_schema_rows(self, db_name: str) -> None:
        with self._guard() as conn:
            with conn:
                conn.execute("DELETE FROM schema_metadata WHERE db_name = ?", (db_name,))

    # -- internals ---------------------------------------------------

    @contextmanager
    def _guard(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._connection
            except sqlite3.Error as exc:
                LOG.error("Bookkeeping store failure", extra={"store": str(self._path)})
                raise DatabaseError(f"Bookkeeping store error: {exc}") from exc

    def _connect(self) -> sqlite3.Connection:
        if isinstance(self._path, Path):
            self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            return sqlite3.connect(str(self._path), check_same_thread=False)
        except sqlite3.Error as exc:
            raise DatabaseError(f"Cannot open bookkeeping store {self._path}: {exc}") from exc

    def _initialize_schema(self) -> None:
        with self._guard() as conn:
            with conn:
                for statement in _SCHEMA:
                    conn.execute(statement)


def _to_record(row: tuple[str, str, str, str]) -> ConnectionRecord:
    name, url, created_at, updated_at = row
    return ConnectionRecord(
        name=name,
        url=url,
        created_at=datetime.fromisoformat(created_at),
        updated_at=datetime.fromisoformat(updated_at),
    )


__all__ = ["CatalogStore", "SchemaRow", "TABLE_KIND", "VIEW_KIND", "utc_now"]
