"""Administrator and ban lists.

Both lists are singleton records written by the bot account, locked on
creation so only the bot can edit them, and verified on every lookup. The
entries live in a fenced ``json`` block inside the record body; the prose
around the block is left untouched by updates.

Users are matched by numeric id first and by case-insensitive login second,
so an entry survives its user being renamed.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from pydantic import TypeAdapter, ValidationError

from issuekeep.errors import ErrorCode, IssueKeepError, permission_denied, validation_error
from issuekeep.models.records import RecordDraft, RecordKey, UserEntry

if TYPE_CHECKING:
    from issuekeep.cache import PersistentCache
    from issuekeep.config import CacheSettings
    from issuekeep.namespace import Namespace
    from issuekeep.protocols import RemoteStoreProtocol
    from issuekeep.records import Precondition, SingletonRecordManager

log = structlog.get_logger()

ADMIN_LIST_LABEL = "wiki-admin-list"
BAN_LIST_LABEL = "wiki-ban-list"
AUTOMATED_LABEL = "automated"

ADMIN_LIST_KEY = RecordKey(
    name="admin-list",
    labels=frozenset({ADMIN_LIST_LABEL, AUTOMATED_LABEL}),
    title="[Admin List]",
)
BAN_LIST_KEY = RecordKey(
    name="ban-list",
    labels=frozenset({BAN_LIST_LABEL, AUTOMATED_LABEL}),
    title="[Ban List]",
)

_JSON_BLOCK = re.compile(r"```json\n(.*?)\n```", re.DOTALL)
_ENTRIES = TypeAdapter(list[UserEntry])


def _utcnow() -> datetime:
    return datetime.now(UTC)


def parse_user_list(body: str, *, strict: bool = False) -> list[UserEntry]:
    """Entries of the fenced json block; an absent block reads as empty.

    A broken block reads as empty too, unless ``strict``: writers pass it so
    an unreadable list is never rendered over and lost.
    """
    match = _JSON_BLOCK.search(body)
    if match is None:
        log.warning("user_list_block_missing")
        return []
    try:
        return _ENTRIES.validate_json(match.group(1))
    except ValidationError as exc:
        log.warning("user_list_unreadable", exc_info=True)
        if strict:
            raise validation_error(
                "The stored user list is unreadable; refusing to overwrite it.",
                "Repair the json block in the list record by hand.",
            ) from exc
        return []


def render_user_list(body: str, entries: list[UserEntry]) -> str:
    block = "```json\n{}\n```".format(
        json.dumps([e.model_dump(exclude_none=True) for e in entries], indent=2)
    )
    if _JSON_BLOCK.search(body) is None:
        return f"{body.rstrip()}\n\n{block}\n"
    return _JSON_BLOCK.sub(lambda _m: block, body, count=1)


def _admin_list_draft() -> RecordDraft:
    return RecordDraft(
        title="[Admin List]",
        body=(
            "**Wiki Administrators**\n\n"
            "Users on this list may manage bans and content.\n\n"
            "**Admin List:**\n```json\n[]\n```\n\n"
            "Only the repository owner can change this list."
        ),
        lock=True,
    )


def _ban_list_draft() -> RecordDraft:
    return RecordDraft(
        title="[Ban List]",
        body=(
            "**Banned Users**\n\n"
            "Users on this list may not comment.\n\n"
            "**Banned Users:**\n```json\n[]\n```\n\n"
            "The repository owner and admins can change this list."
        ),
        lock=True,
    )


class AdminRegistry:
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

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    async def user_id(self, login: str) -> int:
        """Numeric id of ``login``, cached for the profile TTL."""
        key = f"profile:{login.lower()}"
        cached = await self._cache.get(key)
        if cached is not None:
            return int(cached)
        user_id = await self._client.get_user_id(login)
        await self._cache.set(key, user_id, self._cache_settings.profile_ttl_seconds)
        return user_id

    async def _optional_user_id(self, login: str) -> int | None:
        try:
            return await self.user_id(login)
        except IssueKeepError as exc:
            if exc.code != ErrorCode.NOT_FOUND:
                raise
            log.info("user_not_found", login=login)
            return None

    async def owner_id(self, namespace: Namespace) -> int:
        key = f"owner:{namespace.owner}/{namespace.repo}"
        cached = await self._cache.get(key)
        if cached is not None:
            return int(cached)
        owner_id = await self._client.get_owner_id(namespace)
        await self._cache.set(key, owner_id, self._cache_settings.profile_ttl_seconds)
        return owner_id

    async def is_owner(self, namespace: Namespace, login: str) -> bool:
        user_id = await self._optional_user_id(login)
        return user_id is not None and user_id == await self.owner_id(namespace)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_admins(self, namespace: Namespace) -> list[UserEntry]:
        record = await self._records.get_or_create(namespace, ADMIN_LIST_KEY, _admin_list_draft)
        return parse_user_list(record.body)

    async def get_banned_users(self, namespace: Namespace) -> list[UserEntry]:
        record = await self._records.get_or_create(namespace, BAN_LIST_KEY, _ban_list_draft)
        return parse_user_list(record.body)

    async def is_admin(self, namespace: Namespace, login: str) -> bool:
        """The repository owner counts as an admin."""
        user_id = await self._optional_user_id(login)
        if user_id is not None and user_id == await self.owner_id(namespace):
            return True
        admins = await self.get_admins(namespace)
        return any(entry.matches(login, user_id) for entry in admins)

    async def is_banned(self, namespace: Namespace, login: str) -> bool:
        user_id = await self._optional_user_id(login)
        cache_key = self._ban_check_key(namespace, login, user_id)
        cached = await self._cache.get(cache_key)
        if cached is not None:
            return bool(cached)

        banned = await self.get_banned_users(namespace)
        result = any(entry.matches(login, user_id) for entry in banned)
        await self._cache.set(cache_key, result, self._cache_settings.ban_check_ttl_seconds)
        return result

    @staticmethod
    def _ban_check_key(namespace: Namespace, login: str, user_id: int | None) -> str:
        return f"ban-check:{namespace.key}:{user_id if user_id is not None else login.lower()}"

    # ------------------------------------------------------------------
    # Admin list
    # ------------------------------------------------------------------

    async def add_admin(self, namespace: Namespace, login: str, added_by: str) -> list[UserEntry]:
        async def allowed() -> None:
            if not await self.is_owner(namespace, added_by):
                raise permission_denied("Only the repository owner can add admins.")
            if await self.is_banned(namespace, login):
                raise validation_error(
                    f"Cannot add {login} as admin: the user is banned.",
                    "Unban the user first.",
                )

        user_id = await self.user_id(login)

        result: list[UserEntry] = []

        def add(body: str) -> str:
            admins = parse_user_list(body, strict=True)
            if any(entry.matches(login, user_id) for entry in admins):
                raise validation_error(f"{login} is already an admin.", "Nothing to do.")
            admins.append(
                UserEntry(
                    username=login,
                    user_id=user_id,
                    added_by=added_by,
                    added_at=self._clock().isoformat(),
                )
            )
            result[:] = admins
            return render_user_list(body, admins)

        await self._records.update(
            namespace, ADMIN_LIST_KEY, add, factory=_admin_list_draft, precondition=allowed
        )
        log.info("admin_added", login=login, added_by=added_by, namespace=namespace.key)
        return result

    async def remove_admin(
        self, namespace: Namespace, login: str, removed_by: str
    ) -> list[UserEntry]:
        async def owner_only() -> None:
            if not await self.is_owner(namespace, removed_by):
                raise permission_denied("Only the repository owner can remove admins.")

        user_id = await self._optional_user_id(login)
        result = await self._remove_entry(
            namespace, ADMIN_LIST_KEY, _admin_list_draft, login, user_id, precondition=owner_only
        )
        log.info("admin_removed", login=login, removed_by=removed_by, namespace=namespace.key)
        return result

    # ------------------------------------------------------------------
    # Ban list
    # ------------------------------------------------------------------

    async def ban_user(
        self, namespace: Namespace, login: str, banned_by: str, reason: str | None = None
    ) -> list[UserEntry]:
        """Ban ``login``. Banning an admin is reserved to the owner and demotes them first."""
        if not await self.is_admin(namespace, banned_by):
            raise permission_denied("Only the repository owner or admins can ban users.")

        user_id = await self.user_id(login)
        owner_id = await self.owner_id(namespace)
        if user_id == owner_id:
            raise permission_denied("The repository owner cannot be banned.")

        admins = await self.get_admins(namespace)
        if any(entry.matches(login, user_id) for entry in admins):
            if not await self.is_owner(namespace, banned_by):
                raise permission_denied("Only the repository owner can ban admins.")
            await self._remove_entry(namespace, ADMIN_LIST_KEY, _admin_list_draft, login, user_id)
            log.info("admin_demoted_for_ban", login=login, namespace=namespace.key)

        result: list[UserEntry] = []

        def ban(body: str) -> str:
            banned = parse_user_list(body, strict=True)
            if any(entry.matches(login, user_id) for entry in banned):
                raise validation_error(f"{login} is already banned.", "Nothing to do.")
            banned.append(
                UserEntry(
                    username=login,
                    user_id=user_id,
                    reason=reason,
                    banned_by=banned_by,
                    banned_at=self._clock().isoformat(),
                )
            )
            result[:] = banned
            return render_user_list(body, banned)

        await self._records.update(namespace, BAN_LIST_KEY, ban, factory=_ban_list_draft)
        await self._cache.invalidate(self._ban_check_key(namespace, login, user_id))
        log.info("user_banned", login=login, banned_by=banned_by, namespace=namespace.key)
        return result

    async def unban_user(
        self, namespace: Namespace, login: str, unbanned_by: str
    ) -> list[UserEntry]:
        async def admins_only() -> None:
            if not await self.is_admin(namespace, unbanned_by):
                raise permission_denied("Only the repository owner or admins can unban users.")

        user_id = await self._optional_user_id(login)
        result = await self._remove_entry(
            namespace, BAN_LIST_KEY, _ban_list_draft, login, user_id, precondition=admins_only
        )
        await self._cache.invalidate(self._ban_check_key(namespace, login, user_id))
        log.info("user_unbanned", login=login, unbanned_by=unbanned_by, namespace=namespace.key)
        return result

    async def _remove_entry(
        self,
        namespace: Namespace,
        key: RecordKey,
        draft: Callable[[], RecordDraft],
        login: str,
        user_id: int | None,
        *,
        precondition: Precondition | None = None,
    ) -> list[UserEntry]:
        result: list[UserEntry] = []

        def remove(body: str) -> str:
            entries = parse_user_list(body, strict=True)
            kept = [entry for entry in entries if not entry.matches(login, user_id)]
            if len(kept) == len(entries):
                raise IssueKeepError(
                    code=ErrorCode.NOT_FOUND,
                    message=f"{login} is not on the {key.name}.",
                    suggestion="Check the username.",
                    recoverable=False,
                )
            result[:] = kept
            return render_user_list(body, kept)

        await self._records.update(namespace, key, remove, factory=draft, precondition=precondition)
        return result
