"""Composition root wiring the store, registry, pools, schema cache and executor."""

from __future__ import annotations

import logging

from .config import AppConfig, load_config
from .errors import ValidationError
from .models import ConnectionRecord, NaturalQueryResult, QueryResult, SchemaMetadata
from .pools import PoolCache
from .query import QueryExecutor
from .registry import ConnectionRegistry
from .schema import SchemaService
from .sqlguard import SqlGuard
from .store import CatalogStore
from .translate import SqlTranslator
from .validation import (
    is_probeable_url,
    mask_url,
    require_connection_name,
    require_connection_url,
    require_probeable_url,
)

LOG = logging.getLogger(__name__)


class DbQueryService:
    """Single entry point for registering databases and running read-only queries.

    Every collaborator is injectable; ``from_config`` builds the default set.
    """

    def __init__(
        self,
        store: CatalogStore,
        *,
        pools: PoolCache | None = None,
        guard: SqlGuard | None = None,
        translator: SqlTranslator | None = None,
        schema: SchemaService | None = None,
        executor: QueryExecutor | None = None,
    ) -> None:
        self._store = store
        self._registry = ConnectionRegistry(store)
        self._pools = pools if pools is not None else PoolCache()
        self._guard = guard if guard is not None else SqlGuard()
        self._translator = translator
        self._schema = schema if schema is not None else SchemaService(self._registry, store, self._pools)
        self._executor = executor if executor is not None else QueryExecutor(self._guard)

    @classmethod
    def from_config(cls, config: AppConfig) -> DbQueryService:
        store = CatalogStore(config.resolved_store_path())
        return cls(
            store,
            pools=PoolCache(config.pool),
            translator=SqlTranslator(config.llm),
        )

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def pools(self) -> PoolCache:
        return self._pools

    @property
    def schema(self) -> SchemaService:
        return self._schema

    # -- connections -------------------------------------------------

    async def register(self, name: str, url: str) -> ConnectionRecord:
        """Store ``name`` -> ``url``; PostgreSQL URLs must answer a probe first."""

        require_connection_name(name)
        require_connection_url(url)
        previous = self._store.get_connection(name)
        url_changed = previous is not None and previous.url != url

        if url_changed:
            await self._pools.remove(name)
        if is_probeable_url(url):
            await self._pools.get_or_create(name, url)
        else:
            LOG.info("Registering without connection test", extra={"connection": name, "url": mask_url(url)})

        record = self._registry.upsert(name, url)
        if url_changed:
            self._schema.invalidate(name)
        return record

    def list_connections(self) -> list[ConnectionRecord]:
        return self._registry.list()

    def get_connection(self, name: str) -> ConnectionRecord:
        return self._registry.get(name)

    async def delete(self, name: str) -> None:
        self._registry.delete(name)
        await self._pools.remove(name)

    # -- schema ------------------------------------------------------

    async def describe(self, name: str) -> SchemaMetadata:
        return await self._schema.get_schema_metadata(name)

    async def refresh_schema(self, name: str) -> SchemaMetadata:
        return await self._schema.refresh(name)

    # -- queries -----------------------------------------------------

    async def run_query(self, name: str, sql: str) -> QueryResult:
        if not sql or not sql.strip():
            raise ValidationError("SQL query cannot be empty")
        record = self._registry.get(name)
        validated = self._guard.validate(sql)
        require_probeable_url(record.url)
        pool = await self._pools.get_or_create(name, record.url)
        return await self._executor.execute(pool, validated)

    async def run_natural_query(self, name: str, prompt: str) -> NaturalQueryResult:
        """Translate ``prompt`` to SQL, then validate and run it like any other query."""

        if not prompt or not prompt.strip():
            raise ValidationError("Prompt cannot be empty")
        record = self._registry.get(name)
        require_probeable_url(record.url)
        metadata = await self._schema.get_schema_metadata(name)
        translator = self._translator if self._translator is not None else SqlTranslator(load_config().llm)
        generated = await translator.generate_sql(prompt, metadata)
        LOG.info("Generated SQL from prompt", extra={"connection": name})

        validated = self._guard.validate(generated)
        pool = await self._pools.get_or_create(name, record.url)
        result = await self._executor.execute(pool, validated)
        return NaturalQueryResult(sql=validated, result=result)

    # -- lifecycle ---------------------------------------------------

    async def close(self) -> None:
        await self._pools.close_all()
        self._store.close()

    async def __aenter__(self) -> DbQueryService:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


__all__ = ["DbQueryService"]
