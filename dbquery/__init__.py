"""dbquery: read-only SQL and natural-language queries over registered PostgreSQL databases."""

from __future__ import annotations

__version__ = "0.1.0"

from .errors import (
    DatabaseConnectionError,
    DatabaseError,
    DbQueryError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from .models import (
    ColumnInfo,
    ConnectionRecord,
    NaturalQueryResult,
    QueryResult,
    SchemaMetadata,
    TableInfo,
    ViewInfo,
)
from .service import DbQueryService
from .sqlguard import SqlGuard, validate_sql

__all__ = [
    "ColumnInfo",
    "ConnectionRecord",
    "DatabaseConnectionError",
    "DatabaseError",
    "DbQueryError",
    "DbQueryService",
    "InternalError",
    "NaturalQueryResult",
    "NotFoundError",
    "QueryResult",
    "SchemaMetadata",
    "SqlGuard",
    "TableInfo",
    "ValidationError",
    "ViewInfo",
    "__version__",
    "validate_sql",
]
