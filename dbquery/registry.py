"""Connection registry: named connection strings kept in the bookkeeping store."""

from __future__ import annotations

import logging

from .errors import NotFoundError
from .models import ConnectionRecord
from .store import CatalogStore
from .validation import mask_url, require_connection_name, require_connection_url

LOG = logging.getLogger(__name__)


class ConnectionRegistry:
    """Validates and persists named connections."""

    def __init__(self, store: CatalogStore) -> None:
        self._store = store

    def get(self, name: str) -> ConnectionRecord:
        record = self._store.get_connection(name)
        if record is None:
            raise NotFoundError(f"Database '{name}' not found")
        return record

    def list(self) -> list[ConnectionRecord]:
        """All registered connections ordered by name."""

        return self._store.list_connections()

    def upsert(self, name: str, url: str) -> ConnectionRecord:
        """Insert ``name`` or point it at a new URL, refreshing ``updated_at``."""

        require_connection_name(name)
        require_connection_url(url)
        record = self._store.upsert_connection(name, url)
        LOG.info("Registered connection", extra={"connection": name, "url": mask_url(url)})
        return record

    def delete(self, name: str) -> None:
        """Remove ``name`` together with its cached schema rows."""

        if not self._store.delete_connection(name):
            raise NotFoundError(f"Database '{name}' not found")
        LOG.info("Deleted connection", extra={"connection": name})


__all__ = ["ConnectionRegistry"]
