"""Get-or-create protocol for singleton records.

A singleton record is an open issue identified by a label set within a
namespace: the admin list, the ban list, a donator entry, a page's comment
thread, a page's top-contributor record. The remote store has no
transactions, so "exactly one open record per key" is upheld in layers:

1. a fresh PersistentCache entry short-circuits everything;
2. the InFlightCoordinator makes every concurrent caller in this process
   share one lookup-or-create, and keeps the settled result around for the
   remote store's indexing lag;
3. the remote store's own create semantics arbitrate between processes
   (an ``ALREADY_EXISTS`` outcome becomes a re-read).
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog

from issuekeep.errors import ErrorCode, IssueKeepError
from issuekeep.models.records import Record, RecordClass, RecordDraft, RecordKey

if TYPE_CHECKING:
    from issuekeep.cache import PersistentCache
    from issuekeep.config import CacheSettings
    from issuekeep.inflight import InFlightCoordinator
    from issuekeep.namespace import Namespace
    from issuekeep.protocols import RemoteStoreProtocol

log = structlog.get_logger()

RecordFactory = Callable[[], RecordDraft]
BodyMutator = Callable[[str], str]
Precondition = Callable[[], Awaitable[None]]


def record_cache_key(namespace: Namespace, key: RecordKey) -> str:
    return f"record:{namespace.key}:{key.name}"


class SingletonRecordManager:
    """Finds, creates and mutates singleton records."""

    def __init__(
        self,
        client: RemoteStoreProtocol,
        cache: PersistentCache,
        inflight: InFlightCoordinator,
        cache_settings: CacheSettings,
        *,
        trusted_writers: frozenset[str] = frozenset(),
    ) -> None:
        self._client = client
        self._cache = cache
        self._inflight = inflight
        self._cache_settings = cache_settings
        self._trusted_writers = trusted_writers

    def ttl_for(self, key: RecordKey) -> float:
        if key.kind is RecordClass.PAGE:
            return self._cache_settings.page_ttl_seconds
        return self._cache_settings.list_ttl_seconds

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_or_create(
        self,
        namespace: Namespace,
        key: RecordKey,
        factory: RecordFactory,
    ) -> Record:
        """Return the open record for ``key``, creating it if none exists."""
        self._require_trusted_writer(key)
        cache_key = record_cache_key(namespace, key)
        cached = await self._cache.get(cache_key)
        if cached is not None:
            log.debug("record_cache_hit", key=cache_key)
            return Record.model_validate(cached)

        async def work() -> Record:
            return await self._find_or_create(namespace, key, factory, cache_key)

        return await self._inflight.run(cache_key, work)

    async def find(self, namespace: Namespace, key: RecordKey) -> Record | None:
        """Cached-or-remote lookup that never creates a record."""
        cache_key = record_cache_key(namespace, key)
        cached = await self._cache.get(cache_key)
        if cached is not None:
            return Record.model_validate(cached)

        pending = self._inflight.pending(cache_key)
        if pending is not None:
            # A get-or-create is running or just settled; its answer is newer
            # than anything a list query can see yet.
            try:
                return await self._inflight.run(cache_key, self._never_called)
            except IssueKeepError:
                pass

        record, stale = await self._lookup_with_fallback(namespace, key, cache_key)
        if record is not None and not stale:
            await self._cache.set(cache_key, record.model_dump(mode="json"), self.ttl_for(key))
        return record

    @staticmethod
    async def _never_called() -> Record:
        raise AssertionError("pending entry disappeared")  # pragma: no cover

    async def _find_or_create(
        self,
        namespace: Namespace,
        key: RecordKey,
        factory: RecordFactory,
        cache_key: str,
    ) -> Record:
        record, stale = await self._lookup_with_fallback(namespace, key, cache_key)
        if stale:
            return record
        if record is None:
            record = await self._create(namespace, key, factory)
        await self._cache.set(cache_key, record.model_dump(mode="json"), self.ttl_for(key))
        return record

    async def _lookup_with_fallback(
        self, namespace: Namespace, key: RecordKey, cache_key: str
    ) -> tuple[Record | None, bool]:
        """Remote lookup; on ``RATE_LIMITED`` fall back to a stale cache entry."""
        try:
            return await self._lookup(namespace, key), False
        except IssueKeepError as exc:
            if exc.code != ErrorCode.RATE_LIMITED:
                raise
            stale = await self._cache.get(cache_key, allow_stale=True)
            if stale is None:
                raise
            log.warning("record_served_stale", key=cache_key, reason="rate_limited")
            return Record.model_validate(stale), True

    async def _lookup(self, namespace: Namespace, key: RecordKey) -> Record | None:
        records = await self._client.list_by_labels(namespace, key.labels)
        if key.title is not None:
            records = [r for r in records if r.title == key.title]
        if not records:
            return None
        # Lowest number is the oldest: the one every other process also picks
        record = min(records, key=lambda r: r.number)
        if len(records) > 1:
            log.warning(
                "record_duplicates_found",
                key=key.name,
                numbers=[r.number for r in records],
                chosen=record.number,
            )
        self._verify(key, record)
        log.debug("record_found", key=key.name, number=record.number)
        return record.model_copy(update={"key": key.name})

    def _require_trusted_writer(self, key: RecordKey) -> None:
        """Verified keys are refused outright when no trusted writer is configured."""
        if key.verify_writer and not self._trusted_writers:
            log.warning("record_unverifiable", key=key.name)
            raise IssueKeepError(
                code=ErrorCode.UNVERIFIED,
                message=(
                    f"'{key.name}' must be written by a trusted account, "
                    "but none is configured."
                ),
                suggestion="Set remote.bot_login to the account that writes registry records.",
                recoverable=False,
            )

    def _verify(self, key: RecordKey, record: Record) -> None:
        if not key.verify_writer:
            return
        if record.author_login not in self._trusted_writers:
            log.warning(
                "record_unverified",
                key=key.name,
                number=record.number,
                author=record.author_login,
            )
            raise IssueKeepError(
                code=ErrorCode.UNVERIFIED,
                message=(
                    f"Record #{record.number} for '{key.name}' was created by "
                    f"'{record.author_login}', not a trusted writer."
                ),
                suggestion="Close the spoofed record; the trusted writer will recreate it.",
                recoverable=False,
            )

    async def _create(self, namespace: Namespace, key: RecordKey, factory: RecordFactory) -> Record:
        draft = factory()
        try:
            record = await self._client.create_record(
                namespace, draft.title, draft.body, key.labels, lock=draft.lock
            )
        except IssueKeepError as exc:
            if exc.code != ErrorCode.ALREADY_EXISTS:
                raise
            log.info("record_create_lost_race", key=key.name)
            existing = await self._lookup(namespace, key)
            if existing is None:
                raise
            return existing
        log.info("record_materialised", key=key.name, number=record.number)
        return record.model_copy(update={"key": key.name})

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def update(
        self,
        namespace: Namespace,
        key: RecordKey,
        mutator: BodyMutator,
        *,
        factory: RecordFactory | None = None,
        precondition: Precondition | None = None,
    ) -> Record:
        """Rewrite the record body with ``mutator`` and invalidate its cache entry.

        ``precondition`` runs before anything is read or written; if it
        raises, nothing is written. Without a ``factory`` the record must
        already exist (``NOT_FOUND`` otherwise).
        """
        if precondition is not None:
            await precondition()

        if factory is not None:
            current = await self.get_or_create(namespace, key, factory)
        else:
            current = await self._lookup(namespace, key)
            if current is None:
                raise IssueKeepError(
                    code=ErrorCode.NOT_FOUND,
                    message=f"No open record for '{key.name}' in {namespace.key}.",
                    suggestion="Create the record before updating it.",
                    recoverable=False,
                )

        new_body = mutator(current.body)
        updated = await self._client.update_record_body(namespace, current.number, new_body)
        await self.invalidate(namespace, key)
        log.info("record_updated", key=key.name, number=current.number)
        return updated.model_copy(update={"key": key.name})

    async def close(self, namespace: Namespace, key: RecordKey) -> Record | None:
        """Close the open record for ``key``; ``None`` if there is none."""
        current = await self._lookup(namespace, key)
        if current is None:
            return None
        closed = await self._client.close_record(namespace, current.number)
        await self.invalidate(namespace, key)
        log.info("record_closed", key=key.name, number=current.number)
        return closed.model_copy(update={"key": key.name})

    async def invalidate(self, namespace: Namespace, key: RecordKey) -> None:
        cache_key = record_cache_key(namespace, key)
        await self._cache.invalidate(cache_key)
        self._inflight.forget(cache_key)
