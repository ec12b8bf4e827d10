from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, model_validator


class ReactionType(StrEnum):
    UP = "+1"
    DOWN = "-1"
    LAUGH = "laugh"
    CONFUSED = "confused"
    HEART = "heart"
    HOORAY = "hooray"
    ROCKET = "rocket"
    EYES = "eyes"

    @property
    def opposite(self) -> ReactionType | None:
        """The mutually exclusive partner of up/down, ``None`` for the rest."""
        if self is ReactionType.UP:
            return ReactionType.DOWN
        if self is ReactionType.DOWN:
            return ReactionType.UP
        return None


class RecordClass(StrEnum):
    LIST = "list"  # admin list, ban list, donator entries
    PAGE = "page"  # per-page records: comment threads, top contributor


class Record(BaseModel):
    """An open issue acting as a singleton document."""

    key: str = ""  # Logical key within the namespace; empty until resolved by a manager
    number: int
    title: str
    body: str = ""
    labels: frozenset[str] = frozenset()
    locked: bool = False
    author_login: str = ""
    state: str = "open"


class Reaction(BaseModel):
    id: int  # Negative while optimistic, replaced by the remote id once confirmed
    type: ReactionType
    author_login: str


class Comment(BaseModel):
    id: int
    author_id: int | None = None
    author_login: str
    body: str
    created_at: datetime
    updated_at: datetime
    reactions: list[Reaction] = []


class CommentPage(BaseModel):
    comments: list[Comment]
    page: int
    has_more: bool


@dataclass(frozen=True)
class RecordKey:
    """How a singleton record is located in the remote store.

    ``labels`` must all be present on a match (the namespace label is added
    by the manager). When ``title`` is set the title must match exactly too.
    """

    name: str
    labels: frozenset[str] = field(default_factory=frozenset)
    title: str | None = None
    kind: RecordClass = RecordClass.LIST
    verify_writer: bool = True


@dataclass(frozen=True)
class RecordDraft:
    """Initial content for a record that does not exist yet."""

    title: str
    body: str
    lock: bool = False


class UserEntry(BaseModel):
    """One entry of the admin list or the ban list."""

    username: str
    user_id: int | None = None
    added_by: str | None = None
    added_at: str | None = None
    reason: str | None = None
    banned_by: str | None = None
    banned_at: str | None = None

    def matches(self, username: str, user_id: int | None) -> bool:
        # user ids survive renames; usernames cover entries written without one
        if user_id is not None and self.user_id is not None and self.user_id == user_id:
            return True
        return self.username.lower() == username.lower()


class DonatorStatus(BaseModel):
    is_donator: bool
    donated_at: str | None = None
    badge: str | None = None
    color: str | None = None
    assigned_by: str | None = None
    amount: float | None = None
    transaction_id: str | None = None

    @model_validator(mode="after")
    def _require_badge_fields(self) -> DonatorStatus:
        if not self.is_donator:
            return self
        missing = [
            name
            for name in ("donated_at", "badge", "color", "assigned_by")
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(f"donator status is missing: {', '.join(missing)}")
        return self


class DonatorRecord(DonatorStatus):
    user_id: int
    username: str
    last_updated: str


class Contributor(BaseModel):
    login: str
    contributions: int
    avatar_url: str | None = None
    profile_url: str | None = None
