"""Persistent client cache with per-entry TTL and stale fallback.

Entries are JSON documents in durable storage under the ``cache:`` prefix.
An entry is *fresh* while ``now - cached_at < ttl`` and *stale-usable* while
``now - cached_at < stale_ttl``. Stale entries are only handed out when a
caller asks for them explicitly, which the stores do when a live fetch fails
with ``RATE_LIMITED``.

Entries past ``stale_ttl`` are removed on read and by the periodic sweep.
When the number of entries exceeds ``max_entries`` the oldest 20% by
``cached_at`` are evicted.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from issuekeep.models.cache import CacheEntry

if TYPE_CHECKING:
    from issuekeep.protocols import StorageProtocol

log = structlog.get_logger()

CACHE_PREFIX = "cache:"
_LAST_CLEANUP_KEY = "meta:last_cleanup_at"
EVICTION_FRACTION = 0.2


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PersistentCache:
    """TTL cache over a StorageProtocol backend."""

    def __init__(
        self,
        storage: StorageProtocol,
        *,
        stale_ttl_seconds: float,
        max_entries: int,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._storage = storage
        self._stale_ttl = timedelta(seconds=stale_ttl_seconds)
        self._max_entries = max_entries
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_entry(self, key: str) -> CacheEntry | None:
        """Return the entry with its ``stale`` flag set, or ``None``.

        Entries past the stale ceiling and unreadable entries are removed.
        """
        raw = await self._storage.get_item(CACHE_PREFIX + key)
        if raw is None:
            return None
        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError:
            log.warning("cache_entry_unreadable", key=key)
            await self._storage.remove_item(CACHE_PREFIX + key)
            return None

        age = self._clock() - entry.cached_at
        if age >= self._stale_ttl:
            await self._storage.remove_item(CACHE_PREFIX + key)
            return None
        entry.stale = age >= timedelta(seconds=entry.ttl_seconds)
        return entry

    async def get(
        self,
        key: str,
        *,
        ttl: float | None = None,
        allow_stale: bool = False,
    ) -> Any | None:
        """Return the cached value, or ``None`` on a miss.

        ``ttl`` overrides the TTL stored with the entry. With
        ``allow_stale=True`` entries up to the stale ceiling are returned.
        """
        entry = await self.get_entry(key)
        if entry is None:
            return None
        if allow_stale:
            log.debug("cache_hit", key=key, stale=True)
            return entry.value
        max_age = timedelta(seconds=ttl if ttl is not None else entry.ttl_seconds)
        if self._clock() - entry.cached_at >= max_age:
            return None
        log.debug("cache_hit", key=key, stale=False)
        return entry.value

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set(self, key: str, value: Any, ttl: float) -> None:
        entry = CacheEntry(value=value, cached_at=self._clock(), ttl_seconds=ttl)
        await self._storage.set_item(CACHE_PREFIX + key, entry.model_dump_json(exclude={"stale"}))
        await self._evict_if_full()

    async def invalidate(self, key: str) -> None:
        await self._storage.remove_item(CACHE_PREFIX + key)
        log.debug("cache_invalidated", key=key)

    async def invalidate_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with ``prefix``."""
        keys = await self._storage.list_keys(CACHE_PREFIX + prefix)
        for storage_key in keys:
            await self._storage.remove_item(storage_key)
        log.debug("cache_invalidated_prefix", prefix=prefix, removed=len(keys))
        return len(keys)

    async def _evict_if_full(self) -> None:
        keys = await self._storage.list_keys(CACHE_PREFIX)
        if len(keys) <= self._max_entries:
            return

        aged: list[tuple[datetime, str]] = []
        for storage_key in keys:
            raw = await self._storage.get_item(storage_key)
            try:
                cached_at = CacheEntry.model_validate_json(raw).cached_at if raw else None
            except ValidationError:
                cached_at = None
            # Unreadable entries sort first and go out with the oldest
            aged.append((cached_at or datetime.min.replace(tzinfo=UTC), storage_key))
        aged.sort()

        evict_count = max(1, int(self._max_entries * EVICTION_FRACTION))
        for _, storage_key in aged[:evict_count]:
            await self._storage.remove_item(storage_key)
        log.info("cache_evicted", removed=evict_count, remaining=len(keys) - evict_count)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def cleanup_expired(self) -> int:
        """Delete entries older than the stale ceiling."""
        removed = 0
        now = self._clock()
        for storage_key in await self._storage.list_keys(CACHE_PREFIX):
            raw = await self._storage.get_item(storage_key)
            if raw is None:
                continue
            try:
                entry = CacheEntry.model_validate_json(raw)
            except ValidationError:
                entry = None
            if entry is None or now - entry.cached_at >= self._stale_ttl:
                await self._storage.remove_item(storage_key)
                removed += 1
        log.info("cache_cleanup_complete", removed=removed)
        return removed

    async def cleanup_if_due(self, interval_hours: int) -> None:
        """Run cleanup only if ``interval_hours`` have elapsed since the last run.

        Falls through to run cleanup if the stamp is missing or unreadable.
        """
        raw = await self._storage.get_item(_LAST_CLEANUP_KEY)
        if raw is not None:
            try:
                last_run = datetime.fromisoformat(raw)
            except ValueError:
                log.warning("cache_metadata_unreadable", value=raw)
            else:
                if self._clock() - last_run < timedelta(hours=interval_hours):
                    log.debug("cache_cleanup_skipped", reason="not_due")
                    return

        await self.cleanup_expired()
        await self._storage.set_item(_LAST_CLEANUP_KEY, self._clock().isoformat())
