"""Shared test fixtures for the issuekeep test suite."""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import UTC, datetime, timedelta

import aiosqlite
import pytest

from issuekeep.cache import PersistentCache
from issuekeep.config import Settings
from issuekeep.errors import ErrorCode, IssueKeepError
from issuekeep.inflight import InFlightCoordinator
from issuekeep.models.records import Comment, Contributor, Reaction, ReactionType, Record
from issuekeep.namespace import Namespace
from issuekeep.records import SingletonRecordManager
from issuekeep.storage import SqliteStorage

BOT_LOGIN = "wiki-bot"


class FakeClock:
    """Settable clock serving both wall-clock datetimes and monotonic seconds."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        self.seconds = 1000.0

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.seconds

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
        self.seconds += seconds


class FakeRemoteStore:
    """In-memory issue tracker implementing RemoteStoreProtocol.

    ``index_lag`` hides newly created records from label queries until
    ``publish()`` is called, like the real store's indexing delay. Every
    method records its call in ``calls``; ``fail_next`` makes the next call
    of a method raise.
    """

    def __init__(self) -> None:
        self.records: dict[int, Record] = {}
        self.hidden: set[int] = set()
        self.comments: dict[int, list[Comment]] = {}
        self.reactions: dict[int, list[Reaction]] = {}
        self.users: dict[str, int] = {BOT_LOGIN: 1, "owner": 100}
        self.owner_id = 100
        self.contributors: list[Contributor] = []
        self.writer_login = BOT_LOGIN
        self.acting_login = "alice"
        self.index_lag = False
        self.calls: Counter[str] = Counter()
        self._failures: dict[str, list[Exception]] = {}
        self._next_number = 1
        self._next_id = 1000

    # -- test helpers ---------------------------------------------------

    def fail_next(self, method: str, exc: Exception) -> None:
        self._failures.setdefault(method, []).append(exc)

    def publish(self) -> None:
        self.hidden.clear()

    def add_record(
        self,
        namespace: Namespace,
        title: str,
        body: str,
        labels: set[str],
        *,
        author: str = BOT_LOGIN,
    ) -> Record:
        record = Record(
            number=self._next_number,
            title=title,
            body=body,
            labels=frozenset(labels | {namespace.label}),
            author_login=author,
        )
        self._next_number += 1
        self.records[record.number] = record
        return record

    def add_comments(self, number: int, authors: list[str]) -> list[Comment]:
        added = []
        for author in authors:
            added.append(self._make_comment(number, author, f"comment by {author}"))
        return added

    def _make_comment(self, number: int, author: str, body: str) -> Comment:
        self._next_id += 1
        stamp = datetime(2026, 1, 1, tzinfo=UTC) + timedelta(minutes=self._next_id)
        comment = Comment(
            id=self._next_id,
            author_id=self.users.get(author),
            author_login=author,
            body=body,
            created_at=stamp,
            updated_at=stamp,
        )
        self.comments.setdefault(number, []).append(comment)
        return comment

    async def _enter(self, method: str) -> None:
        self.calls[method] += 1
        # Let concurrent callers interleave as they would on real I/O
        await asyncio.sleep(0)
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    # -- records ----------------------------------------------------------

    async def list_by_labels(self, namespace: Namespace, labels: frozenset[str]) -> list[Record]:
        await self._enter("list_by_labels")
        required = labels | {namespace.label}
        return [
            r
            for n, r in sorted(self.records.items())
            if r.state == "open" and required <= r.labels and n not in self.hidden
        ]

    async def create_record(
        self,
        namespace: Namespace,
        title: str,
        body: str,
        labels: frozenset[str],
        *,
        lock: bool = False,
    ) -> Record:
        await self._enter("create_record")
        record = self.add_record(namespace, title, body, set(labels), author=self.writer_login)
        if lock:
            record = record.model_copy(update={"locked": True})
            self.records[record.number] = record
        if self.index_lag:
            self.hidden.add(record.number)
        return record

    async def update_record_body(self, namespace: Namespace, number: int, body: str) -> Record:
        await self._enter("update_record_body")
        record = self.records[number].model_copy(update={"body": body})
        self.records[number] = record
        return record

    async def close_record(self, namespace: Namespace, number: int) -> Record:
        await self._enter("close_record")
        record = self.records[number].model_copy(update={"state": "closed"})
        self.records[number] = record
        return record

    # -- comments -----------------------------------------------------------

    async def list_comments(
        self, namespace: Namespace, number: int, page: int, page_size: int
    ) -> list[Comment]:
        await self._enter("list_comments")
        start = (page - 1) * page_size
        return list(self.comments.get(number, [])[start : start + page_size])

    def _find_comment(self, comment_id: int) -> tuple[int, int]:
        for number, comments in self.comments.items():
            for index, comment in enumerate(comments):
                if comment.id == comment_id:
                    return number, index
        raise IssueKeepError(
            code=ErrorCode.NOT_FOUND, message="no such comment", suggestion="", recoverable=False
        )

    async def get_comment(self, namespace: Namespace, comment_id: int) -> Comment:
        await self._enter("get_comment")
        number, index = self._find_comment(comment_id)
        return self.comments[number][index]

    async def create_comment(self, namespace: Namespace, number: int, body: str) -> Comment:
        await self._enter("create_comment")
        return self._make_comment(number, self.acting_login, body)

    async def update_comment(self, namespace: Namespace, comment_id: int, body: str) -> Comment:
        await self._enter("update_comment")
        number, index = self._find_comment(comment_id)
        updated = self.comments[number][index].model_copy(update={"body": body})
        self.comments[number][index] = updated
        return updated

    # -- reactions ----------------------------------------------------------

    async def list_reactions(self, namespace: Namespace, comment_id: int) -> list[Reaction]:
        await self._enter("list_reactions")
        return list(self.reactions.get(comment_id, []))

    async def create_reaction(
        self, namespace: Namespace, comment_id: int, reaction_type: ReactionType
    ) -> Reaction:
        await self._enter("create_reaction")
        existing = self.reactions.setdefault(comment_id, [])
        for reaction in existing:
            if reaction.author_login == self.acting_login and reaction.type == reaction_type:
                return reaction
        self._next_id += 1
        reaction = Reaction(id=self._next_id, type=reaction_type, author_login=self.acting_login)
        existing.append(reaction)
        return reaction

    async def delete_reaction(
        self, namespace: Namespace, comment_id: int, reaction_id: int
    ) -> None:
        await self._enter("delete_reaction")
        self.reactions[comment_id] = [
            r for r in self.reactions.get(comment_id, []) if r.id != reaction_id
        ]

    # -- repository and users ---------------------------------------------

    async def get_owner_id(self, namespace: Namespace) -> int:
        await self._enter("get_owner_id")
        return self.owner_id

    async def get_authenticated_login(self) -> str:
        await self._enter("get_authenticated_login")
        return self.acting_login

    async def get_user_id(self, login: str) -> int:
        await self._enter("get_user_id")
        for name, user_id in self.users.items():
            if name.lower() == login.lower():
                return user_id
        raise IssueKeepError(
            code=ErrorCode.NOT_FOUND, message="no such user", suggestion="", recoverable=False
        )

    async def list_contributors(self, namespace: Namespace) -> list[Contributor]:
        await self._enter("list_contributors")
        return list(self.contributors)


@pytest.fixture()
def namespace() -> Namespace:
    return Namespace(owner="acme", repo="wiki", branch="main")


@pytest.fixture()
def settings() -> Settings:
    return Settings(remote={"owner": "acme", "repo": "wiki", "bot_login": BOT_LOGIN})


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture()
async def storage() -> SqliteStorage:
    async with aiosqlite.connect(":memory:") as db:
        sqlite_storage = SqliteStorage(db)
        await sqlite_storage.init_db()
        yield sqlite_storage


@pytest.fixture()
def cache(storage: SqliteStorage, clock: FakeClock) -> PersistentCache:
    return PersistentCache(storage, stale_ttl_seconds=86400, max_entries=500, clock=clock)


@pytest.fixture()
async def inflight() -> InFlightCoordinator:
    coordinator = InFlightCoordinator(grace_seconds=5.0)
    yield coordinator
    await coordinator.close()


@pytest.fixture()
def records(
    remote: FakeRemoteStore,
    cache: PersistentCache,
    inflight: InFlightCoordinator,
    settings: Settings,
) -> SingletonRecordManager:
    return SingletonRecordManager(
        remote, cache, inflight, settings.cache, trusted_writers=frozenset({BOT_LOGIN})
    )
