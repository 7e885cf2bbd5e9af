"""Schema introspection with a cache that is only trusted when complete."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import asyncpg

from .errors import classify_driver_error
from .models import ColumnInfo, SchemaMetadata, TableInfo, ViewInfo
from .pools import PoolCache
from .registry import ConnectionRegistry
from .store import TABLE_KIND, VIEW_KIND, CatalogStore, SchemaRow, utc_now
from .validation import is_safe_identifier, require_probeable_url

LOG = logging.getLogger(__name__)

CompletenessPredicate = Callable[[SchemaMetadata], bool]


def has_all_row_counts(metadata: SchemaMetadata) -> bool:
    """Cached metadata is usable only when every table carries a row count."""

    return all(table.row_count is not None for table in metadata.tables)


class PostgresIntrospector:
    """Reads tables, views, columns, keys and row counts of the ``public`` schema."""

    _TABLES_QUERY = """
        SELECT table_name
        FROM information_schema.tables
        WHERE table_schema = $1 AND table_type = 'BASE TABLE'
        ORDER BY table_name
    """

    _VIEWS_QUERY = """
        SELECT table_name
        FROM information_schema.views
        WHERE table_schema = $1
        ORDER BY table_name
    """

    _COLUMNS_QUERY = """
        SELECT column_name, data_type, is_nullable = 'YES' AS nullable, column_default
        FROM information_schema.columns
        WHERE table_schema = $1 AND table_name = $2
        ORDER BY ordinal_position
    """

    _PRIMARY_KEY_QUERY = """
        SELECT kcu.column_name
        FROM information_schema.table_constraints tc
        JOIN information_schema.key_column_usage kcu
            ON tc.constraint_name = kcu.constraint_name
            AND tc.table_schema = kcu.table_schema
            AND tc.table_name = kcu.table_name
        WHERE tc.table_schema = $1
            AND tc.table_name = $2
            AND tc.constraint_type = 'PRIMARY KEY'
        ORDER BY kcu.ordinal_position
    """

    def __init__(self, schema: str = "public") -> None:
        self._schema = schema

    async def introspect(self, conn: Any, db_name: str) -> SchemaMetadata:
        table_rows = await conn.fetch(self._TABLES_QUERY, self._schema)
        tables: list[TableInfo] = []
        for row in table_rows:
            name = str(row["table_name"])
            tables.append(
                TableInfo(
                    name=name,
                    columns=await self._columns(conn, name),
                    primary_key=await self._primary_key(conn, name),
                    row_count=await self.row_count(conn, name),
                )
            )

        view_rows = await conn.fetch(self._VIEWS_QUERY, self._schema)
        views = [
            ViewInfo(name=str(row["table_name"]), columns=await self._columns(conn, str(row["table_name"])))
            for row in view_rows
        ]
        return SchemaMetadata(db_name=db_name, tables=tables, views=views, updated_at=utc_now())

    async def row_count(self, conn: Any, table: str) -> int | None:
        """Exact ``COUNT(*)``, or ``None`` when it cannot be measured safely."""

        if not is_safe_identifier(table):
            LOG.warning("Skipping row count for unsafe identifier", extra={"table": table})
            return None
        try:
            count = await conn.fetchval(f'SELECT COUNT(*) FROM "{self._schema}"."{table}"')
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            LOG.warning("Row count failed", extra={"table": table, "error": str(exc)})
            return None
        return int(count) if count is not None else None

    async def _columns(self, conn: Any, relation: str) -> list[ColumnInfo]:
        rows = await conn.fetch(self._COLUMNS_QUERY, self._schema, relation)
        return [
            ColumnInfo(
                name=str(row["column_name"]),
                data_type=str(row["data_type"]),
                nullable=bool(row["nullable"]),
                default_value=None if row["column_default"] is None else str(row["column_default"]),
            )
            for row in rows
        ]

    async def _primary_key(self, conn: Any, table: str) -> list[str] | None:
        rows = await conn.fetch(self._PRIMARY_KEY_QUERY, self._schema, table)
        return [str(row["column_name"]) for row in rows] or None


class SchemaService:
    """Serves ``SchemaMetadata`` per named database, cache first."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        store: CatalogStore,
        pools: PoolCache,
        *,
        introspector: PostgresIntrospector | None = None,
        is_complete: CompletenessPredicate = has_all_row_counts,
    ) -> None:
        self._registry = registry
        self._store = store
        self._pools = pools
        self._introspector = introspector or PostgresIntrospector()
        self._is_complete = is_complete

    async def get_schema_metadata(self, name: str) -> SchemaMetadata:
        record = self._registry.get(name)
        cached = self.cached(name)
        if cached is not None:
            if self._is_complete(cached):
                LOG.debug("Schema cache hit", extra={"connection": name})
                return cached
            LOG.info("Discarding incomplete schema cache", extra={"connection": name})
            self._store.clear_schema_rows(name)
        return await self._fetch_and_cache(name, record.url)

    async def refresh(self, name: str) -> SchemaMetadata:
        """Ignore the cache and rebuild metadata from the live database."""

        record = self._registry.get(name)
        self._store.clear_schema_rows(name)
        return await self._fetch_and_cache(name, record.url)

    def invalidate(self, name: str) -> None:
        self._store.clear_schema_rows(name)

    def cached(self, name: str) -> SchemaMetadata | None:
        """Rebuild metadata from cached rows, or ``None`` when nothing is cached."""

        rows = self._store.read_schema_rows(name)
        if not rows:
            return None
        tables: list[TableInfo] = []
        views: list[ViewInfo] = []
        for row in rows:
            columns = [ColumnInfo.model_validate(column) for column in row.payload.get("columns", [])]
            if row.object_kind == TABLE_KIND:
                tables.append(
                    TableInfo(
                        name=row.object_name,
                        columns=columns,
                        primary_key=row.payload.get("primaryKey"),
                        row_count=row.payload.get("rowCount"),
                    )
                )
            else:
                views.append(ViewInfo(name=row.object_name, columns=columns))
        return SchemaMetadata(
            db_name=name,
            tables=tables,
            views=views,
            updated_at=max(row.updated_at for row in rows),
        )

    async def _fetch_and_cache(self, name: str, url: str) -> SchemaMetadata:
        require_probeable_url(url)
        pool = await self._pools.get_or_create(name, url)
        started = time.perf_counter()
        async with pool.acquire() as conn:
            try:
                metadata = await self._introspector.introspect(conn, name)
            except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
                elapsed_ms = int((time.perf_counter() - started) * 1000)
                raise classify_driver_error(exc, elapsed_ms=elapsed_ms) from exc
        self._store.replace_schema_rows(name, _to_rows(metadata))
        LOG.info(
            "Cached schema metadata",
            extra={"connection": name, "tables": len(metadata.tables), "views": len(metadata.views)},
        )
        return metadata


def _to_rows(metadata: SchemaMetadata) -> list[SchemaRow]:
    rows: list[SchemaRow] = []
    for table in metadata.tables:
        payload = table.as_dict()
        payload.pop("name", None)
        rows.append(SchemaRow(table.name, TABLE_KIND, payload, metadata.updated_at))
    for view in metadata.views:
        payload = view.as_dict()
        payload.pop("name", None)
        rows.append(SchemaRow(view.name, VIEW_KIND, payload, metadata.updated_at))
    return rows


__all__ = [
    "CompletenessPredicate",
    "PostgresIntrospector",
    "SchemaService",
    "has_all_row_counts",
]
