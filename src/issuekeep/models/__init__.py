from __future__ import annotations

from issuekeep.models.cache import CachedDocument, CacheEntry
from issuekeep.models.records import (
    Comment,
    CommentPage,
    Contributor,
    DonatorRecord,
    DonatorStatus,
    Reaction,
    ReactionType,
    Record,
    RecordClass,
    RecordDraft,
    RecordKey,
    UserEntry,
)
from issuekeep.models.tools import (
    CommentOutput,
    EditCommentInput,
    ListCommentsInput,
    ListCommentsOutput,
    ModerationListsOutput,
    PostCommentInput,
    ToggleReactionInput,
    ToggleReactionOutput,
)

__all__ = [
    # records
    "Record",
    "RecordKey",
    "RecordDraft",
    "RecordClass",
    "Comment",
    "CommentPage",
    "Reaction",
    "ReactionType",
    "UserEntry",
    "DonatorStatus",
    "DonatorRecord",
    "Contributor",
    # cache
    "CacheEntry",
    "CachedDocument",
    # tools
    "ListCommentsInput",
    "ListCommentsOutput",
    "PostCommentInput",
    "EditCommentInput",
    "CommentOutput",
    "ToggleReactionInput",
    "ToggleReactionOutput",
    "ModerationListsOutput",
]
