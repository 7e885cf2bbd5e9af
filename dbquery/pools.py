"""Per-connection asyncpg pools shared by every caller of the same name."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from typing import Any, Protocol

import asyncpg

from .config import PoolSettings
from .errors import DatabaseConnectionError, DatabaseError, ValidationError
from .validation import mask_url

LOG = logging.getLogger(__name__)

# Failures while obtaining a physical connection mean the target was not reachable.
_ACQUIRE_FAILURES = (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError)


class PoolHandle(Protocol):
    """What callers need from a cached pool."""

    def acquire(self) -> AbstractAsyncContextManager[Any]: ...

    def is_closed(self) -> bool: ...

    async def close(self) -> None: ...


PoolFactory = Callable[[str, PoolSettings], Awaitable[PoolHandle]]


@dataclass(frozen=True, slots=True)
class _CachedPool:
    url: str
    pool: PoolHandle

    def serves(self, url: str) -> bool:
        return self.url == url and not self.pool.is_closed()


class TargetPool:
    """Bounded asyncpg pool for one target database.

    asyncpg has no per-connection lifetime limit, so connections are expired
    in generations: once ``max_lifetime`` has passed since the last
    generation began, every connection is replaced on its next release.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        settings: PoolSettings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._pool = pool
        self._settings = settings
        self._clock = clock
        self._generation_started = clock()

    @property
    def settings(self) -> PoolSettings:
        return self._settings

    @asynccontextmanager
    async def acquire(self, *, timeout: float | None = None) -> AsyncIterator[asyncpg.Connection]:
        """Borrow a physical connection; it always returns to the pool."""

        await self._recycle_if_due()
        started = time.perf_counter()
        try:
            connection = await self._pool.acquire(timeout=timeout or self._settings.acquire_timeout)
        except ValueError as exc:
            raise ValidationError(f"Malformed connection string: {exc}") from exc
        except _ACQUIRE_FAILURES as exc:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            detail = str(exc) or exc.__class__.__name__
            raise DatabaseConnectionError(f"Failed to connect: {detail}", elapsed_ms=elapsed_ms) from exc
        try:
            yield connection
        finally:
            await self._pool.release(connection)

    async def probe(self) -> None:
        """Connect within ``connect_timeout`` and run ``SELECT 1`` within ``probe_timeout``."""

        async with self.acquire(timeout=self._settings.connect_timeout) as connection:
            started = time.perf_counter()
            try:
                await connection.fetchval("SELECT 1", timeout=self._settings.probe_timeout)
            except (asyncio.TimeoutError, OSError, asyncpg.InterfaceError) as exc:
                elapsed_ms = int((time.perf_counter() - started) * 1000)
                raise DatabaseConnectionError(
                    f"Health probe failed: {str(exc) or 'timed out'}", elapsed_ms=elapsed_ms
                ) from exc
            except asyncpg.PostgresError as exc:
                raise DatabaseError(f"Health probe rejected: {exc}") from exc

    def is_closed(self) -> bool:
        return self._pool.is_closing()

    async def close(self) -> None:
        try:
            await asyncio.wait_for(self._pool.close(), timeout=self._settings.acquire_timeout)
        except asyncio.TimeoutError:
            LOG.warning("Pool did not close gracefully; terminating connections")
            self._pool.terminate()

    async def _recycle_if_due(self) -> None:
        now = self._clock()
        if now - self._generation_started < self._settings.max_lifetime:
            return
        self._generation_started = now
        LOG.debug("Expiring pooled connections past their lifetime")
        await self._pool.expire_connections()


async def _init_connection(connection: asyncpg.Connection) -> None:
    for type_name in ("json", "jsonb"):
        await connection.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


async def create_target_pool(url: str, settings: PoolSettings) -> TargetPool:
    """Build a pool for ``url`` and prove it works before handing it out."""

    pool = await asyncpg.create_pool(
        dsn=url,
        min_size=0,
        max_size=settings.max_size,
        max_inactive_connection_lifetime=settings.idle_timeout,
        timeout=settings.connect_timeout,
        init=_init_connection,
    )
    target = TargetPool(pool, settings)
    try:
        await target.probe()
    except BaseException:
        pool.terminate()
        raise
    return target


class PoolCache:
    """Registry of live pools keyed by connection name.

    Each entry remembers the URL it was built for. Lookups read the map
    without locking and only return an open pool built for the requested
    URL. Construction, replacement and removal happen under one
    ``asyncio.Lock`` and re-check the map once inside it, so concurrent
    first requests for a name build exactly one pool, and a pool built for
    a stale URL is closed and rebuilt rather than handed out.
    """

    def __init__(
        self,
        settings: PoolSettings | None = None,
        *,
        factory: PoolFactory | None = None,
    ) -> None:
        self._settings = settings if settings is not None else PoolSettings()
        self._factory = factory if factory is not None else create_target_pool
        self._pools: dict[str, _CachedPool] = {}
        self._lock = asyncio.Lock()

    @property
    def settings(self) -> PoolSettings:
        return self._settings

    def __contains__(self, name: object) -> bool:
        return name in self._pools

    def __len__(self) -> int:
        return len(self._pools)

    def url_of(self, name: str) -> str | None:
        entry = self._pools.get(name)
        return entry.url if entry is not None else None

    async def get_or_create(self, name: str, url: str) -> PoolHandle:
        entry = self._pools.get(name)
        if entry is not None and entry.serves(url):
            return entry.pool
        async with self._lock:
            entry = self._pools.get(name)
            if entry is not None and entry.serves(url):
                return entry.pool
            if entry is not None:
                del self._pools[name]
                if entry.url != url:
                    LOG.info("Replacing pool built for another URL", extra={"connection": name})
                await entry.pool.close()
            started = time.perf_counter()
            pool = await self._factory(url, self._settings)
            self._pools[name] = _CachedPool(url, pool)
            LOG.info(
                "Created connection pool",
                extra={
                    "connection": name,
                    "url": mask_url(url),
                    "elapsed_ms": int((time.perf_counter() - started) * 1000),
                },
            )
            return pool

    async def remove(self, name: str) -> None:
        """Unregister and close the pool for ``name``; no-op when absent."""

        async with self._lock:
            entry = self._pools.pop(name, None)
        if entry is None:
            return
        await entry.pool.close()
        LOG.info("Closed connection pool", extra={"connection": name})

    async def close_all(self) -> None:
        async with self._lock:
            entries = list(self._pools.items())
            self._pools.clear()
        for name, entry in entries:
            try:
                await entry.pool.close()
            except Exception:  # pragma: no cover
                LOG.exception("Failed to close connection pool", extra={"connection": name})


__all__ = ["PoolCache", "PoolFactory", "PoolHandle", "TargetPool", "create_target_pool"]
