"""Application state container.

AppState is created once at server startup (inside the FastMCP lifespan context
manager) and injected into every tool handler via the MCP Context object.
Every store shares the same cache, coordinator and remote client.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from issuekeep.account import ActingAccount
from issuekeep.documents import CachedDocumentStore, TopContributorStore
from issuekeep.donators import DonatorRegistry
from issuekeep.inflight import InFlightCoordinator
from issuekeep.moderation import AdminRegistry
from issuekeep.ratelimit import RateLimiter
from issuekeep.reactions import ReactionReconciler
from issuekeep.records import SingletonRecordManager
from issuekeep.threads import ThreadStore

if TYPE_CHECKING:
    import httpx

    from issuekeep.cache import PersistentCache
    from issuekeep.config import Settings
    from issuekeep.namespace import Namespace
    from issuekeep.protocols import RemoteStoreProtocol


@dataclass
class AppState:
    """Holds all shared runtime state. Passed to every tool handler."""

    settings: Settings
    namespace: Namespace
    client: RemoteStoreProtocol
    account: ActingAccount
    cache: PersistentCache
    inflight: InFlightCoordinator
    rate_limiter: RateLimiter
    records: SingletonRecordManager
    threads: ThreadStore
    reactions: ReactionReconciler
    admins: AdminRegistry
    donators: DonatorRegistry
    contributors: TopContributorStore
    http_client: httpx.AsyncClient | None = None


def build_state(
    settings: Settings,
    namespace: Namespace,
    client: RemoteStoreProtocol,
    cache: PersistentCache,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> AppState:
    """Wire every store around one client, cache and coordinator."""
    bot_login = settings.remote.bot_login
    account = ActingAccount(client)
    inflight = InFlightCoordinator(settings.coordination.inflight_grace_seconds)
    rate_limiter = RateLimiter(settings.rate_limits)
    records = SingletonRecordManager(
        client,
        cache,
        inflight,
        settings.cache,
        trusted_writers=frozenset({bot_login}) if bot_login else frozenset(),
    )
    admins = AdminRegistry(client, records, cache, settings.cache)
    threads = ThreadStore(
        client,
        records,
        cache,
        rate_limiter,
        settings.cache,
        settings.threads,
        account=account,
        ban_check=admins.is_banned,
    )
    reactions = ReactionReconciler(
        client, cache, rate_limiter, settings.cache, settings.coordination, account=account
    )
    documents = CachedDocumentStore(records, cache, settings.cache)
    return AppState(
        settings=settings,
        namespace=namespace,
        client=client,
        account=account,
        cache=cache,
        inflight=inflight,
        rate_limiter=rate_limiter,
        records=records,
        threads=threads,
        reactions=reactions,
        admins=admins,
        donators=DonatorRegistry(client, records, cache, settings.cache),
        contributors=TopContributorStore(client, documents),
        http_client=http_client,
    )
