"""Records exchanged between the registry, schema service and executor."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

JsonValue = Union[None, str, int, float, bool, list[Any], dict[str, Any]]


@dataclass(frozen=True, slots=True)
class ConnectionRecord:
    """A registered, named connection string."""

    name: str
    url: str
    created_at: datetime
    updated_at: datetime

    def as_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "url": self.url,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


class _SchemaModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ColumnInfo(_SchemaModel):
    """Column as reported by the target database."""

    name: str
    data_type: str
    nullable: bool
    default_value: str | None = None


class TableInfo(_SchemaModel):
    """Base table; ``row_count`` is ``None`` when it could not be measured."""

    name: str
    columns: list[ColumnInfo] = []
    primary_key: list[str] | None = None
    row_count: int | None = None


class ViewInfo(_SchemaModel):
    name: str
    columns: list[ColumnInfo] = []


class SchemaMetadata(_SchemaModel):
    """Tables and views of one named database."""

    db_name: str
    tables: list[TableInfo] = []
    views: list[ViewInfo] = []
    updated_at: datetime


@dataclass(frozen=True, slots=True)
class QueryResult:
    """Portable query output: every cell is a JSON-compatible value."""

    columns: tuple[str, ...]
    rows: tuple[tuple[JsonValue, ...], ...]
    execution_time_ms: int

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def as_dict(self) -> dict[str, Any]:
        return {
            "columns": list(self.columns),
            "rows": [list(row) for row in self.rows],
            "rowCount": self.row_count,
            "executionTimeMs": self.execution_time_ms,
        }


@dataclass(frozen=True, slots=True)
class NaturalQueryResult:
    """Outcome of a prompt: the SQL that was generated and what it returned."""

    sql: str
    result: QueryResult

    def as_dict(self) -> dict[str, Any]:
        return {"sql": self.sql, **self.result.as_dict()}


__all__ = [
    "ColumnInfo",
    "ConnectionRecord",
    "JsonValue",
    "NaturalQueryResult",
    "QueryResult",
    "SchemaMetadata",
    "TableInfo",
    "ViewInfo",
]
