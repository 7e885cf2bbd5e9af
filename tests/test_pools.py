"""Tests for the per-connection pool cache and asyncpg pool wrapper."""

from __future__ import annotations

import asyncio
from typing import Any

import asyncpg
import pytest

from dbquery.config import PoolSettings
from dbquery.errors import DatabaseConnectionError, DatabaseError, ValidationError
from dbquery.pools import PoolCache, TargetPool, create_target_pool


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _FakeHandle:
    def __init__(self, url: str) -> None:
        self.url = url
        self.closed = False

    def is_closed(self) -> bool:
        return self.closed

    async def close(self) -> None:
        self.closed = True


class _CountingFactory:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def __call__(self, url: str, settings: PoolSettings) -> _FakeHandle:
        self.calls.append(url)
        # Yield so concurrent callers interleave inside construction.
        await asyncio.sleep(0.01)
        return _FakeHandle(url)


@pytest.mark.anyio
async def test_concurrent_first_requests_build_one_pool() -> None:
    factory = _CountingFactory()
    cache = PoolCache(factory=factory)

    pools = await asyncio.gather(*(cache.get_or_create("sales", "postgresql://h/sales") for _ in range(10)))

    assert len(factory.calls) == 1
    assert all(pool is pools[0] for pool in pools)
    assert "sales" in cache
    assert len(cache) == 1


@pytest.mark.anyio
async def test_pools_are_never_shared_across_names() -> None:
    factory = _CountingFactory()
    cache = PoolCache(factory=factory)

    first = await cache.get_or_create("a", "postgresql://h/same")
    second = await cache.get_or_create("b", "postgresql://h/same")

    assert first is not second
    assert len(cache) == 2


@pytest.mark.anyio
async def test_remove_closes_pool_and_next_request_builds_fresh_one() -> None:
    factory = _CountingFactory()
    cache = PoolCache(factory=factory)
    original = await cache.get_or_create("sales", "postgresql://h/sales")

    await cache.remove("sales")
    replacement = await cache.get_or_create("sales", "postgresql://h/sales")

    assert original.closed is True
    assert replacement is not original
    assert len(factory.calls) == 2


@pytest.mark.anyio
async def test_remove_unknown_name_is_a_no_op() -> None:
    cache = PoolCache(factory=_CountingFactory())

    await cache.remove("ghost")

    assert len(cache) == 0


@pytest.mark.anyio
async def test_closed_pool_is_replaced() -> None:
    factory = _CountingFactory()
    cache = PoolCache(factory=factory)
    original = await cache.get_or_create("sales", "postgresql://h/sales")
    original.closed = True

    replacement = await cache.get_or_create("sales", "postgresql://h/sales")

    assert replacement is not original
    assert len(factory.calls) == 2


@pytest.mark.anyio
async def test_request_for_another_url_rebuilds_pool() -> None:
    factory = _CountingFactory()
    cache = PoolCache(factory=factory)
    original = await cache.get_or_create("sales", "postgresql://old/sales")

    replacement = await cache.get_or_create("sales", "postgresql://new/sales")
    again = await cache.get_or_create("sales", "postgresql://new/sales")

    assert original.closed is True
    assert replacement.url == "postgresql://new/sales"
    assert again is replacement
    assert cache.url_of("sales") == "postgresql://new/sales"
    assert factory.calls == ["postgresql://old/sales", "postgresql://new/sales"]


@pytest.mark.anyio
async def test_stale_entry_built_during_removal_is_not_reused() -> None:
    factory = _CountingFactory()
    cache = PoolCache(factory=factory)
    await cache.get_or_create("sales", "postgresql://old/sales")

    # A caller holding the old URL repopulates the name while it is being removed.
    await asyncio.gather(
        cache.remove("sales"),
        cache.get_or_create("sales", "postgresql://old/sales"),
    )
    current = await cache.get_or_create("sales", "postgresql://new/sales")

    assert current.url == "postgresql://new/sales"
    assert cache.url_of("sales") == "postgresql://new/sales"
    assert len(cache) == 1


def test_settings_are_kept() -> None:
    settings = PoolSettings(max_size=2)

    assert PoolCache(settings).settings is settings
    assert PoolCache().url_of("ghost") is None


@pytest.mark.anyio
async def test_failed_construction_leaves_no_entry() -> None:
    async def _failing(url: str, settings: PoolSettings) -> _FakeHandle:
        raise DatabaseConnectionError("unreachable", elapsed_ms=12)

    cache = PoolCache(factory=_failing)

    with pytest.raises(DatabaseConnectionError, match="12 ms"):
        await cache.get_or_create("sales", "postgresql://h/sales")
    assert "sales" not in cache


@pytest.mark.anyio
async def test_close_all_closes_every_pool() -> None:
    cache = PoolCache(factory=_CountingFactory())
    first = await cache.get_or_create("a", "postgresql://h/a")
    second = await cache.get_or_create("b", "postgresql://h/b")

    await cache.close_all()

    assert first.closed and second.closed
    assert len(cache) == 0


class _FakeConnection:
    def __init__(self, probe_error: BaseException | None = None) -> None:
        self.probe_error = probe_error

    async def fetchval(self, query: str, timeout: float | None = None) -> int:
        if self.probe_error is not None:
            raise self.probe_error
        return 1


class _FakeAsyncpgPool:
    def __init__(
        self,
        connection: _FakeConnection | None = None,
        acquire_error: BaseException | None = None,
    ) -> None:
        self.connection = connection or _FakeConnection()
        self.acquire_error = acquire_error
        self.acquire_timeouts: list[float | None] = []
        self.released: list[Any] = []
        self.expired = 0
        self.terminated = False
        self.closing = False

    async def acquire(self, *, timeout: float | None = None) -> _FakeConnection:
        self.acquire_timeouts.append(timeout)
        if self.acquire_error is not None:
            raise self.acquire_error
        return self.connection

    async def release(self, connection: Any) -> None:
        self.released.append(connection)

    async def expire_connections(self) -> None:
        self.expired += 1

    def is_closing(self) -> bool:
        return self.closing

    async def close(self) -> None:
        self.closing = True

    def terminate(self) -> None:
        self.terminated = True
        self.closing = True


@pytest.mark.anyio
async def test_acquire_always_releases_connection() -> None:
    raw = _FakeAsyncpgPool()
    pool = TargetPool(raw, PoolSettings())

    with pytest.raises(RuntimeError):
        async with pool.acquire():
            raise RuntimeError("query blew up")

    assert raw.released == [raw.connection]
    assert raw.acquire_timeouts == [30.0]


@pytest.mark.anyio
async def test_acquire_timeout_surfaces_connection_error() -> None:
    raw = _FakeAsyncpgPool(acquire_error=asyncio.TimeoutError())
    pool = TargetPool(raw, PoolSettings())

    with pytest.raises(DatabaseConnectionError) as excinfo:
        async with pool.acquire():
            pass

    assert excinfo.value.elapsed_ms is not None
    assert excinfo.value.retryable is True


@pytest.mark.anyio
async def test_malformed_dsn_is_a_validation_error() -> None:
    raw = _FakeAsyncpgPool(acquire_error=ValueError("invalid port"))
    pool = TargetPool(raw, PoolSettings())

    with pytest.raises(ValidationError, match="Malformed connection string"):
        async with pool.acquire():
            pass


@pytest.mark.anyio
async def test_connections_are_expired_after_max_lifetime() -> None:
    now = [0.0]
    raw = _FakeAsyncpgPool()
    pool = TargetPool(raw, PoolSettings(max_lifetime=60), clock=lambda: now[0])

    async with pool.acquire():
        pass
    now[0] = 61.0
    async with pool.acquire():
        pass
    now[0] = 90.0
    async with pool.acquire():
        pass

    assert raw.expired == 1


@pytest.mark.anyio
async def test_probe_timeout_is_a_connection_error() -> None:
    raw = _FakeAsyncpgPool(connection=_FakeConnection(probe_error=asyncio.TimeoutError()))
    pool = TargetPool(raw, PoolSettings())

    with pytest.raises(DatabaseConnectionError, match="timed out"):
        await pool.probe()
    assert raw.acquire_timeouts == [15.0]


@pytest.mark.anyio
async def test_probe_rejection_is_a_database_error() -> None:
    raw = _FakeAsyncpgPool(connection=_FakeConnection(probe_error=asyncpg.PostgresError("permission denied")))
    pool = TargetPool(raw, PoolSettings())

    with pytest.raises(DatabaseError, match="permission denied"):
        await pool.probe()


@pytest.mark.anyio
async def test_create_target_pool_passes_limits(monkeypatch: pytest.MonkeyPatch) -> None:
    raw = _FakeAsyncpgPool()
    captured: dict[str, Any] = {}

    async def _create_pool(**kwargs: Any) -> _FakeAsyncpgPool:
        captured.update(kwargs)
        return raw

    monkeypatch.setattr("dbquery.pools.asyncpg.create_pool", _create_pool)

    pool = await create_target_pool("postgresql://h/sales", PoolSettings())

    assert isinstance(pool, TargetPool)
    assert captured["dsn"] == "postgresql://h/sales"
    assert captured["max_size"] == 5
    assert captured["max_inactive_connection_lifetime"] == 600.0
    assert captured["timeout"] == 15.0
    assert pool.is_closed() is False


@pytest.mark.anyio
async def test_create_target_pool_terminates_on_failed_probe(monkeypatch: pytest.MonkeyPatch) -> None:
    raw = _FakeAsyncpgPool(acquire_error=ConnectionRefusedError("refused"))

    async def _create_pool(**kwargs: Any) -> _FakeAsyncpgPool:
        return raw

    monkeypatch.setattr("dbquery.pools.asyncpg.create_pool", _create_pool)

    with pytest.raises(DatabaseConnectionError, match="refused"):
        await create_target_pool("postgresql://h/sales", PoolSettings())
    assert raw.terminated is True
