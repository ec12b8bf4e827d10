"""SQLite key/value storage backing the persistent cache.

All operations catch ``aiosqlite.Error`` internally and degrade gracefully:
read failures return ``None`` or an empty list (treated as cache misses by
callers), write failures are logged and ignored. Storage is infrastructure;
a broken database file must never stop a record or thread from being served
straight from the remote store. Errors are logged with ``exc_info=True`` so
they remain observable.
"""

from __future__ import annotations

import aiosqlite
import structlog

log = structlog.get_logger()

_CREATE_KV_TABLE = """
CREATE TABLE IF NOT EXISTS kv_store (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
)
"""


class SqliteStorage:
    """aiosqlite-backed durable storage implementing StorageProtocol."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def init_db(self) -> None:
        """Create the table and set WAL mode. Called once at startup."""
        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute(_CREATE_KV_TABLE)
        await self._db.commit()

    async def get_item(self, key: str) -> str | None:
        try:
            cursor = await self._db.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = await cursor.fetchone()
            return None if row is None else row[0]
        except aiosqlite.Error:
            log.warning("storage_read_error", key=key, exc_info=True)
            return None

    async def set_item(self, key: str, value: str) -> None:
        try:
            await self._db.execute(
                "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)", (key, value)
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("storage_write_error", key=key, exc_info=True)

    async def remove_item(self, key: str) -> None:
        try:
            await self._db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("storage_delete_error", key=key, exc_info=True)

    async def list_keys(self, prefix: str) -> list[str]:
        """Return every key starting with ``prefix`` (all keys for ``''``)."""
        try:
            # substr() instead of LIKE so '%' and '_' in keys need no escaping
            cursor = await self._db.execute(
                "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            )
            return [row[0] for row in await cursor.fetchall()]
        except aiosqlite.Error:
            log.warning("storage_list_error", prefix=prefix, exc_info=True)
            return []
