"""Per-user donator records.

Each donator has one record labelled ``donator`` and ``user-id:<id>`` whose
body is the JSON-encoded status. Records written before user ids were
tracked are found by their ``[Donator] <username>`` title instead.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from issuekeep.models.records import DonatorRecord, DonatorStatus, RecordDraft, RecordKey
from issuekeep.namespace import user_id_label

if TYPE_CHECKING:
    from issuekeep.cache import PersistentCache
    from issuekeep.config import CacheSettings
    from issuekeep.namespace import Namespace
    from issuekeep.protocols import RemoteStoreProtocol
    from issuekeep.records import SingletonRecordManager

log = structlog.get_logger()

DONATOR_LABEL = "donator"
DONATOR_TITLE_PREFIX = "[Donator]"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def donator_key(user_id: int) -> RecordKey:
    return RecordKey(
        name=f"donator:{user_id}",
        labels=frozenset({DONATOR_LABEL, user_id_label(user_id)}),
    )


def legacy_donator_key(username: str) -> RecordKey:
    return RecordKey(
        name=f"donator:{username.lower()}",
        labels=frozenset({DONATOR_LABEL}),
        title=f"{DONATOR_TITLE_PREFIX} {username}",
    )


def _parse(body: str, number: int) -> DonatorRecord | None:
    try:
        return DonatorRecord.model_validate_json(body)
    except ValidationError:
        log.warning("donator_record_unreadable", number=number)
        return None


class DonatorRegistry:
    def __init__(
        self,
        client: RemoteStoreProtocol,
        records: SingletonRecordManager,
        cache: PersistentCache,
        cache_settings: CacheSettings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._records = records
        self._cache = cache
        self._cache_settings = cache_settings
        self._clock = clock

    async def _locate(
        self, namespace: Namespace, username: str, user_id: int | None
    ) -> tuple[RecordKey, DonatorRecord | None] | None:
        candidates = [legacy_donator_key(username)]
        if user_id is not None:
            candidates.insert(0, donator_key(user_id))
        for key in candidates:
            record = await self._records.find(namespace, key)
            if record is not None:
                return key, _parse(record.body, record.number)
        return None

    async def get_status(
        self, namespace: Namespace, username: str, user_id: int | None = None
    ) -> DonatorRecord | None:
        found = await self._locate(namespace, username, user_id)
        return None if found is None else found[1]

    async def save_status(
        self,
        namespace: Namespace,
        username: str,
        user_id: int,
        status: DonatorStatus,
    ) -> DonatorRecord:
        """Create or overwrite the donator record of ``username``."""
        entry = DonatorRecord(
            user_id=user_id,
            username=username,
            last_updated=self._clock().isoformat(),
            **status.model_dump(),
        )
        body = json.dumps(entry.model_dump(mode="json"), indent=2)

        found = await self._locate(namespace, username, user_id)
        if found is not None:
            key, _current = found
            await self._records.update(namespace, key, lambda _body: body)
        else:
            key = donator_key(user_id)
            record = await self._records.get_or_create(
                namespace,
                key,
                lambda: RecordDraft(title=f"{DONATOR_TITLE_PREFIX} {username}", body=body),
            )
            # Another writer created it first
            if record.body != body:
                await self._records.update(namespace, key, lambda _body: body)

        await self._cache.invalidate(self._listing_key(namespace))
        log.info(
            "donator_status_saved",
            username=username,
            user_id=user_id,
            is_donator=entry.is_donator,
        )
        return entry

    async def list_donators(self, namespace: Namespace) -> list[DonatorRecord]:
        cache_key = self._listing_key(namespace)
        cached = await self._cache.get(cache_key)
        if cached is not None:
            return [DonatorRecord.model_validate(item) for item in cached]

        records = await self._client.list_by_labels(namespace, frozenset({DONATOR_LABEL}))
        donators = []
        for record in sorted(records, key=lambda r: r.number):
            entry = _parse(record.body, record.number)
            if entry is not None:
                donators.append(entry)
        await self._cache.set(
            cache_key,
            [d.model_dump(mode="json") for d in donators],
            self._cache_settings.list_ttl_seconds,
        )
        return donators

    async def remove_status(
        self, namespace: Namespace, username: str, user_id: int | None = None
    ) -> bool:
        """Close the donator record. ``False`` when there was none."""
        found = await self._locate(namespace, username, user_id)
        if found is None:
            return False
        key, _current = found
        closed = await self._records.close(namespace, key)
        await self._cache.invalidate(self._listing_key(namespace))
        log.info("donator_status_removed", username=username, user_id=user_id)
        return closed is not None

    @staticmethod
    def _listing_key(namespace: Namespace) -> str:
        return f"donators:{namespace.key}"
