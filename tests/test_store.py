"""Tests for the SQLite bookkeeping store and the connection registry."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path

import pytest

from dbquery.errors import NotFoundError, ValidationError
from dbquery.registry import ConnectionRegistry
from dbquery.store import TABLE_KIND, VIEW_KIND, CatalogStore, SchemaRow


@pytest.fixture
def store(tmp_path: Path) -> Iterator[CatalogStore]:
    catalog = CatalogStore(tmp_path / "nested" / "db_query.db")
    yield catalog
    catalog.close()


def _row(name: str, kind: str = TABLE_KIND, **payload: object) -> SchemaRow:
    return SchemaRow(name, kind, dict(payload), datetime(2024, 1, 1, tzinfo=timezone.utc))


def test_store_creates_parent_directories(tmp_path: Path) -> None:
    path = tmp_path / "a" / "b" / "store.db"

    CatalogStore(path).close()

    assert path.exists()


def test_upsert_inserts_then_updates(store: CatalogStore) -> None:
    created = store.upsert_connection("sales", "postgresql://localhost/sales")
    updated = store.upsert_connection("sales", "postgresql://localhost/sales_v2")

    assert updated.url == "postgresql://localhost/sales_v2"
    assert updated.created_at == created.created_at
    assert updated.updated_at >= created.updated_at
    assert len(store.list_connections()) == 1


def test_list_connections_is_ordered_by_name(store: CatalogStore) -> None:
    for name in ("zeta", "alpha", "mid"):
        store.upsert_connection(name, f"postgresql://localhost/{name}")

    assert [record.name for record in store.list_connections()] == ["alpha", "mid", "zeta"]


def test_delete_cascades_to_schema_rows(store: CatalogStore) -> None:
    store.upsert_connection("sales", "postgresql://localhost/sales")
    store.replace_schema_rows("sales", [_row("orders", rowCount=3)])

    assert store.delete_connection("sales") is True
    assert store.get_connection("sales") is None
    assert store.read_schema_rows("sales") == []
    assert store.delete_connection("sales") is False


def test_replace_schema_rows_swaps_everything(store: CatalogStore) -> None:
    store.upsert_connection("sales", "postgresql://localhost/sales")
    store.replace_schema_rows("sales", [_row("orders"), _row("old_table")])
    store.replace_schema_rows("sales", [_row("orders", rowCount=1), _row("summary", VIEW_KIND)])

    rows = store.read_schema_rows("sales")

    assert [(row.object_name, row.object_kind) for row in rows] == [
        ("orders", TABLE_KIND),
        ("summary", VIEW_KIND),
    ]
    assert rows[0].payload == {"rowCount": 1}
    assert rows[0].updated_at == datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_clear_schema_rows_only_touches_one_name(store: CatalogStore) -> None:
    store.upsert_connection("a", "postgresql://localhost/a")
    store.upsert_connection("b", "postgresql://localhost/b")
    store.replace_schema_rows("a", [_row("t")])
    store.replace_schema_rows("b", [_row("t")])

    store.clear_schema_rows("a")

    assert store.read_schema_rows("a") == []
    assert len(store.read_schema_rows("b")) == 1


def test_in_memory_store() -> None:
    catalog = CatalogStore(":memory:")
    try:
        catalog.upsert_connection("mem", "sqlite://memory")
        assert catalog.get_connection("mem") is not None
    finally:
        catalog.close()


def test_registry_get_unknown_name_raises(store: CatalogStore) -> None:
    registry = ConnectionRegistry(store)

    with pytest.raises(NotFoundError, match="'ghost' not found"):
        registry.get("ghost")


def test_registry_validates_before_writing(store: CatalogStore) -> None:
    registry = ConnectionRegistry(store)

    with pytest.raises(ValidationError):
        registry.upsert("bad name", "postgresql://localhost/db")
    with pytest.raises(ValidationError):
        registry.upsert("good", "redis://localhost")

    assert registry.list() == []


def test_registry_delete_then_get_sees_deletion(store: CatalogStore) -> None:
    registry = ConnectionRegistry(store)
    registry.upsert("sales", "postgresql://localhost/sales")

    registry.delete("sales")

    with pytest.raises(NotFoundError):
        registry.get("sales")
    with pytest.raises(NotFoundError):
        registry.delete("sales")
