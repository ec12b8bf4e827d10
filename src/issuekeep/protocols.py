"""Protocol interfaces for swappable components.

Stores and AppState reference these protocols, not the concrete
implementations. This allows:
- Tests to use lightweight in-memory remote stores
- Other durable storage media to replace SQLite without touching the cache
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from issuekeep.models.records import Comment, Contributor, Reaction, ReactionType, Record
    from issuekeep.namespace import Namespace


class StorageProtocol(Protocol):
    """Durable key/value surface with no transactional guarantees."""

    async def get_item(self, key: str) -> str | None: ...

    async def set_item(self, key: str, value: str) -> None: ...

    async def remove_item(self, key: str) -> None: ...

    async def list_keys(self, prefix: str) -> list[str]: ...


class RemoteStoreProtocol(Protocol):
    """Interface for the remote document API."""

    async def list_by_labels(
        self, namespace: Namespace, labels: frozenset[str]
    ) -> list[Record]: ...

    async def create_record(
        self,
        namespace: Namespace,
        title: str,
        body: str,
        labels: frozenset[str],
        *,
        lock: bool = False,
    ) -> Record: ...

    async def update_record_body(
        self, namespace: Namespace, number: int, body: str
    ) -> Record: ...

    async def close_record(self, namespace: Namespace, number: int) -> Record: ...

    async def list_comments(
        self, namespace: Namespace, number: int, page: int, page_size: int
    ) -> list[Comment]: ...

    async def get_comment(self, namespace: Namespace, comment_id: int) -> Comment: ...

    async def create_comment(self, namespace: Namespace, number: int, body: str) -> Comment: ...

    async def update_comment(
        self, namespace: Namespace, comment_id: int, body: str
    ) -> Comment: ...

    async def list_reactions(self, namespace: Namespace, comment_id: int) -> list[Reaction]: ...

    async def create_reaction(
        self, namespace: Namespace, comment_id: int, reaction_type: ReactionType
    ) -> Reaction: ...

    async def delete_reaction(
        self, namespace: Namespace, comment_id: int, reaction_id: int
    ) -> None: ...

    async def get_owner_id(self, namespace: Namespace) -> int: ...

    async def get_authenticated_login(self) -> str: ...

    async def get_user_id(self, login: str) -> int: ...

    async def list_contributors(self, namespace: Namespace) -> list[Contributor]: ...
