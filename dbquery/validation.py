"""Shape checks for connection names, connection URLs and SQL identifiers."""

from __future__ import annotations

import re

from .errors import ValidationError

MAX_NAME_LENGTH = 100
MAX_IDENTIFIER_LENGTH = 63

POSTGRES_SCHEMES = ("postgres://", "postgresql://")
RECOGNIZED_SCHEMES = POSTGRES_SCHEMES + ("mysql://", "sqlite://")

_IDENTIFIER_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_CREDENTIALS_PATTERN = re.compile(r"://[^@/]+@")


def is_valid_connection_name(name: str) -> bool:
    """Names are 1-100 characters of letters, digits, dashes or underscores."""

    if not name or len(name) > MAX_NAME_LENGTH:
        return False
    return all(char.isalnum() or char in "-_" for char in name)


def is_valid_connection_url(url: str) -> bool:
    """URLs must start with one of the recognized database schemes."""

    return bool(url) and url.startswith(RECOGNIZED_SCHEMES)


def is_probeable_url(url: str) -> bool:
    """Only PostgreSQL URLs are connected to, introspected or queried."""

    return url.startswith(POSTGRES_SCHEMES)


def is_safe_identifier(identifier: str) -> bool:
    """Allow-list check used before interpolating a table name into SQL."""

    if not identifier or len(identifier) > MAX_IDENTIFIER_LENGTH:
        return False
    return _IDENTIFIER_PATTERN.fullmatch(identifier) is not None


def require_connection_name(name: str) -> str:
    if not is_valid_connection_name(name):
        raise ValidationError(
            f"Invalid database name '{name}': use 1-{MAX_NAME_LENGTH} letters, digits, '-' or '_'."
        )
    return name


def require_connection_url(url: str) -> str:
    if not is_valid_connection_url(url):
        raise ValidationError(
            "Invalid database URL format: expected one of " + ", ".join(RECOGNIZED_SCHEMES)
        )
    return url


def require_probeable_url(url: str) -> str:
    if not is_probeable_url(url):
        raise ValidationError("Only PostgreSQL databases are supported")
    return url


def mask_url(url: str) -> str:
    """Hide credentials before a connection string reaches the logs."""

    return _CREDENTIALS_PATTERN.sub("://***@", url)


__all__ = [
    "MAX_IDENTIFIER_LENGTH",
    "MAX_NAME_LENGTH",
    "POSTGRES_SCHEMES",
    "RECOGNIZED_SCHEMES",
    "is_probeable_url",
    "is_safe_identifier",
    "is_valid_connection_name",
    "is_valid_connection_url",
    "mask_url",
    "require_connection_name",
    "require_connection_url",
    "require_probeable_url",
]
