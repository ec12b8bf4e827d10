"""Records whose body caches an expensive computation.

This is the third cache tier, shared by every process: the local
PersistentCache is checked first, then the ``last_updated`` stamp inside
the record body, and only when both are too old is the value computed again
and written back into the record for everyone else.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from issuekeep.errors import ErrorCode, IssueKeepError
from issuekeep.models.cache import CachedDocument
from issuekeep.models.records import Contributor, RecordClass, RecordDraft, RecordKey
from issuekeep.namespace import page_label

if TYPE_CHECKING:
    from issuekeep.cache import PersistentCache
    from issuekeep.config import CacheSettings
    from issuekeep.namespace import Namespace
    from issuekeep.protocols import RemoteStoreProtocol
    from issuekeep.records import SingletonRecordManager

log = structlog.get_logger()

HIGHSCORE_LABEL = "highscore-cache"
AUTOMATION_LABEL = "automation"
HIGHSCORE_TITLE = "Contributor Highscore Cache [DO NOT DELETE]"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _parse_document(body: str) -> CachedDocument:
    try:
        return CachedDocument.model_validate_json(body)
    except ValidationError:
        # A hand-edited or foreign body is treated as never computed
        log.warning("cached_document_unreadable")
        return CachedDocument()


def _render_document(document: CachedDocument) -> str:
    return json.dumps(document.model_dump(mode="json"), indent=2)


class CachedDocumentStore:
    def __init__(
        self,
        records: SingletonRecordManager,
        cache: PersistentCache,
        cache_settings: CacheSettings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._records = records
        self._cache = cache
        self._cache_settings = cache_settings
        self._clock = clock

    async def get(
        self,
        namespace: Namespace,
        key: RecordKey,
        title: str,
        compute: Callable[[], Awaitable[Any]],
        *,
        max_age_minutes: float | None = None,
        force: bool = False,
    ) -> Any:
        """Return the cached value of ``compute`` stored in the record for ``key``.

        ``force`` skips both cache tiers and recomputes. If recomputing is
        rate limited, the value already in the record is returned, however
        old.
        """
        if max_age_minutes is None:
            max_age_minutes = self._cache_settings.document_max_age_minutes
        max_age = timedelta(minutes=max_age_minutes)
        local_key = f"document:{namespace.key}:{key.name}"

        if not force:
            cached = await self._cache.get(local_key, ttl=max_age.total_seconds())
            if cached is not None:
                return cached

        def draft() -> RecordDraft:
            return RecordDraft(title=title, body=_render_document(CachedDocument()))

        record = await self._records.get_or_create(namespace, key, draft)
        document = _parse_document(record.body)

        if (
            not force
            and document.last_updated is not None
            and self._clock() - document.last_updated < max_age
        ):
            log.debug("cached_document_hit", key=key.name, number=record.number)
            remaining = max_age - (self._clock() - document.last_updated)
            await self._cache.set(local_key, document.data, remaining.total_seconds())
            return document.data

        try:
            data = await compute()
        except IssueKeepError as exc:
            if exc.code != ErrorCode.RATE_LIMITED or document.last_updated is None:
                raise
            log.warning("cached_document_served_stale", key=key.name, number=record.number)
            return document.data

        fresh = CachedDocument(last_updated=self._clock(), data=data)
        await self._records.update(
            namespace, key, lambda _body: _render_document(fresh), factory=draft
        )
        value = fresh.model_dump(mode="json")["data"]
        await self._cache.set(local_key, value, max_age.total_seconds())
        log.info("cached_document_refreshed", key=key.name, number=record.number)
        return value


def highscore_key() -> RecordKey:
    return RecordKey(name="highscore", labels=frozenset({HIGHSCORE_LABEL, AUTOMATION_LABEL}))


def page_contributors_key(section_id: str, page_id: str) -> RecordKey:
    return RecordKey(
        name=f"top-contributors:{section_id}/{page_id}",
        labels=frozenset({HIGHSCORE_LABEL, page_label(section_id, page_id)}),
        kind=RecordClass.PAGE,
    )


class TopContributorStore:
    """Contributor rankings, repository-wide and per page."""

    def __init__(self, client: RemoteStoreProtocol, documents: CachedDocumentStore) -> None:
        self._client = client
        self._documents = documents

    async def highscore(self, namespace: Namespace, *, force: bool = False) -> list[Contributor]:
        async def compute() -> list[dict]:
            contributors = await self._client.list_contributors(namespace)
            contributors.sort(key=lambda c: c.contributions, reverse=True)
            return [c.model_dump(mode="json") for c in contributors]

        data = await self._documents.get(
            namespace, highscore_key(), HIGHSCORE_TITLE, compute, force=force
        )
        return [Contributor.model_validate(item) for item in data or []]

    async def page_contributors(
        self,
        namespace: Namespace,
        section_id: str,
        page_id: str,
        compute: Callable[[], Awaitable[list[Contributor]]],
        *,
        force: bool = False,
    ) -> list[Contributor]:
        """Top contributors of one page; ``compute`` ranks them when the record is old."""

        async def ranked() -> list[dict]:
            contributors = await compute()
            contributors.sort(key=lambda c: c.contributions, reverse=True)
            return [c.model_dump(mode="json") for c in contributors]

        data = await self._documents.get(
            namespace,
            page_contributors_key(section_id, page_id),
            f"[Top Contributors] {section_id}/{page_id}",
            ranked,
            force=force,
        )
        return [Contributor.model_validate(item) for item in data or []]
