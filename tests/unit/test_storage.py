"""Unit tests for issuekeep.storage."""

from __future__ import annotations

import aiosqlite
import pytest

from issuekeep.storage import SqliteStorage


class TestSqliteStorage:
    async def test_set_get_remove(self, storage: SqliteStorage) -> None:
        await storage.set_item("a", "1")
        assert await storage.get_item("a") == "1"

        await storage.remove_item("a")
        assert await storage.get_item("a") is None

    async def test_set_replaces(self, storage: SqliteStorage) -> None:
        await storage.set_item("a", "1")
        await storage.set_item("a", "2")
        assert await storage.get_item("a") == "2"

    async def test_list_keys_by_prefix(self, storage: SqliteStorage) -> None:
        for key in ("cache:b", "cache:a", "meta:x"):
            await storage.set_item(key, "v")

        assert await storage.list_keys("cache:") == ["cache:a", "cache:b"]
        assert await storage.list_keys("") == ["cache:a", "cache:b", "meta:x"]

    async def test_remove_missing_is_noop(self, storage: SqliteStorage) -> None:
        await storage.remove_item("missing")
        assert await storage.list_keys("") == []


class TestDegradation:
    """A broken database turns reads into misses and writes into no-ops."""

    @pytest.fixture()
    async def broken(self) -> SqliteStorage:
        db = await aiosqlite.connect(":memory:")
        sqlite_storage = SqliteStorage(db)
        # No init_db: every statement fails with "no such table"
        yield sqlite_storage
        await db.close()

    async def test_read_failure_is_miss(self, broken: SqliteStorage) -> None:
        assert await broken.get_item("a") is None

    async def test_write_failure_is_swallowed(self, broken: SqliteStorage) -> None:
        await broken.set_item("a", "1")
        await broken.remove_item("a")

    async def test_list_failure_is_empty(self, broken: SqliteStorage) -> None:
        assert await broken.list_keys("") == []
