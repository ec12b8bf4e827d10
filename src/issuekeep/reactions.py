"""Optimistic toggling of mutually exclusive up/down reactions.

The visible reaction set of a comment is updated before the remote call
returns. If the remote call fails, the optimistic state is thrown away and
the authoritative set is fetched again, so the visible state is always
either the state before the toggle or a confirmed state after it.

The remote store allows one author to hold both ``+1`` and ``-1`` on a
comment; exclusivity is upheld here. Every reaction is created as the
acting account, so "held" means held by that account.

Visible sets are kept in memory for the reactions TTL, the same freshness
the persistent cache gives them; after that reads go back to the cache and
then the remote store, so votes by other users show up.
"""

from __future__ import annotations

import asyncio
import itertools
import time
import weakref
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog

from issuekeep.errors import ErrorCode, IssueKeepError, validation_error
from issuekeep.models.records import Reaction, ReactionType
from issuekeep.ratelimit import RateCategory

if TYPE_CHECKING:
    from issuekeep.account import ActingAccount
    from issuekeep.cache import PersistentCache
    from issuekeep.config import CacheSettings, CoordinationSettings
    from issuekeep.namespace import Namespace
    from issuekeep.protocols import RemoteStoreProtocol
    from issuekeep.ratelimit import RateLimiter

log = structlog.get_logger()

_VOTES = (ReactionType.UP, ReactionType.DOWN)


def reactions_cache_key(namespace: Namespace, comment_id: int) -> str:
    return f"reactions:{namespace.key}:{comment_id}"


class ReactionReconciler:
    def __init__(
        self,
        client: RemoteStoreProtocol,
        cache: PersistentCache,
        rate_limiter: RateLimiter,
        cache_settings: CacheSettings,
        coordination: CoordinationSettings,
        *,
        account: ActingAccount,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._account = account
        self._ttl = cache_settings.reactions_ttl_seconds
        self._switch_delay = coordination.reaction_switch_delay_seconds
        self._sleep = sleep
        self._clock = clock
        # key -> (monotonic stamp, visible set)
        self._views: dict[str, tuple[float, list[Reaction]]] = {}
        # A lock lives only while a toggle holds or awaits it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        # Optimistic reactions carry negative ids until the remote store confirms them
        self._temp_ids = itertools.count(-1, -1)

    def view(self, namespace: Namespace, comment_id: int) -> list[Reaction] | None:
        """The currently visible reaction set, or ``None`` if unknown or expired."""
        current = self._fresh_view(reactions_cache_key(namespace, comment_id))
        return None if current is None else list(current)

    async def reactions(
        self, namespace: Namespace, comment_id: int, *, force: bool = False
    ) -> list[Reaction]:
        """Reaction set of a comment: in-memory view, then cache, then remote."""
        key = reactions_cache_key(namespace, comment_id)
        if not force:
            current = self._fresh_view(key)
            if current is not None:
                return list(current)
            cached = await self._cache.get(key)
            if cached is not None:
                current = [Reaction.model_validate(item) for item in cached]
                self._set_view(key, current)
                return list(current)

        try:
            current = await self._client.list_reactions(namespace, comment_id)
        except IssueKeepError as exc:
            if exc.code != ErrorCode.RATE_LIMITED:
                raise
            stale = await self._cache.get(key, allow_stale=True)
            if stale is None:
                raise
            log.warning("reactions_served_stale", comment_id=comment_id)
            current = [Reaction.model_validate(item) for item in stale]
            self._set_view(key, current)
            return list(current)

        await self._publish(key, current)
        return list(current)

    async def toggle(
        self,
        namespace: Namespace,
        comment_id: int,
        author_login: str,
        reaction_type: ReactionType,
    ) -> list[Reaction]:
        """Toggle ``reaction_type`` for ``author_login`` and return the resulting set.

        ``author_login`` must name the acting account. Holding the type
        removes it. Holding the opposite switches: the opposite is deleted,
        then after a short delay the new type is created. Holding neither
        adds it. A remote failure rolls the view back and the classified
        error is re-raised.
        """
        if reaction_type not in _VOTES:
            raise validation_error(
                f"Only {ReactionType.UP} and {ReactionType.DOWN} can be toggled.",
                "Use +1 or -1.",
            )
        author_login = await self._account.require(author_login)

        key = reactions_cache_key(namespace, comment_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        async with lock:
            before = await self.reactions(namespace, comment_id)
            mine = [
                r
                for r in before
                if r.author_login.lower() == author_login.lower() and r.type in _VOTES
            ]
            held = {r.type: r for r in mine}
            opposite = reaction_type.opposite
            switching = reaction_type not in held and opposite in held

            self._rate_limiter.enforce(RateCategory.REACTION, relaxed_cooldown=switching)

            try:
                if reaction_type in held:
                    result = await self._remove(namespace, comment_id, key, before, mine)
                elif switching:
                    result = await self._switch(
                        namespace, comment_id, key, before, held[opposite], reaction_type
                    )
                else:
                    result = await self._add(
                        namespace, comment_id, key, before, author_login, reaction_type
                    )
            except IssueKeepError as exc:
                log.warning(
                    "reaction_toggle_failed",
                    comment_id=comment_id,
                    author=author_login,
                    type=str(reaction_type),
                    code=exc.code,
                )
                await self._rollback(namespace, comment_id, key, before)
                raise

            await self._publish(key, result)
            log.info(
                "reaction_toggled",
                comment_id=comment_id,
                author=author_login,
                type=str(reaction_type),
                switched=switching,
            )
            return list(result)

    async def _remove(
        self,
        namespace: Namespace,
        comment_id: int,
        key: str,
        before: list[Reaction],
        held: list[Reaction],
    ) -> list[Reaction]:
        # Removes every vote the author holds, so a doubled +1/-1 left by
        # another client is cleaned up as well
        held_ids = {r.id for r in held}
        after = [r for r in before if r.id not in held_ids]
        self._set_view(key, after)
        for reaction in held:
            await self._delete(namespace, comment_id, reaction)
        return after

    async def _switch(
        self,
        namespace: Namespace,
        comment_id: int,
        key: str,
        before: list[Reaction],
        old: Reaction,
        reaction_type: ReactionType,
    ) -> list[Reaction]:
        temp = Reaction(id=next(self._temp_ids), type=reaction_type, author_login=old.author_login)
        optimistic = [r for r in before if r.id != old.id] + [temp]
        self._set_view(key, optimistic)
        await self._delete(namespace, comment_id, old)
        # The remote store rejects an add that follows a delete too closely
        await self._sleep(self._switch_delay)
        created = await self._client.create_reaction(namespace, comment_id, reaction_type)
        return self._confirm(key, optimistic, temp, created)

    async def _add(
        self,
        namespace: Namespace,
        comment_id: int,
        key: str,
        before: list[Reaction],
        author_login: str,
        reaction_type: ReactionType,
    ) -> list[Reaction]:
        temp = Reaction(id=next(self._temp_ids), type=reaction_type, author_login=author_login)
        optimistic = [*before, temp]
        self._set_view(key, optimistic)
        created = await self._client.create_reaction(namespace, comment_id, reaction_type)
        return self._confirm(key, optimistic, temp, created)

    async def _delete(self, namespace: Namespace, comment_id: int, reaction: Reaction) -> None:
        try:
            await self._client.delete_reaction(namespace, comment_id, reaction.id)
        except IssueKeepError as exc:
            if exc.code != ErrorCode.NOT_FOUND:
                raise
            # Removed elsewhere since the set was read; the goal state holds
            log.info("reaction_already_deleted", comment_id=comment_id, reaction_id=reaction.id)

    def _confirm(
        self, key: str, optimistic: list[Reaction], temp: Reaction, created: Reaction
    ) -> list[Reaction]:
        confirmed = [created if r.id == temp.id else r for r in optimistic]
        self._set_view(key, confirmed)
        return confirmed

    async def _rollback(
        self, namespace: Namespace, comment_id: int, key: str, before: list[Reaction]
    ) -> None:
        self._views.pop(key, None)
        await self._cache.invalidate(key)
        try:
            await self.reactions(namespace, comment_id, force=True)
        except IssueKeepError:
            # The pre-toggle state is the last one known to be consistent
            log.warning("reaction_rollback_refetch_failed", comment_id=comment_id, exc_info=True)
            self._set_view(key, before)

    def _fresh_view(self, key: str) -> list[Reaction] | None:
        entry = self._views.get(key)
        if entry is None:
            return None
        stamp, current = entry
        if self._clock() - stamp >= self._ttl:
            del self._views[key]
            return None
        return current

    def _set_view(self, key: str, current: list[Reaction]) -> None:
        now = self._clock()
        expired = [k for k, (stamp, _) in self._views.items() if now - stamp >= self._ttl]
        for stale_key in expired:
            del self._views[stale_key]
        self._views[key] = (now, list(current))

    async def _publish(self, key: str, current: list[Reaction]) -> None:
        self._set_view(key, current)
        await self._cache.set(key, [r.model_dump(mode="json") for r in current], self._ttl)
