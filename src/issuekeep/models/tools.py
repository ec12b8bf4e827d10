from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

from issuekeep.models.records import Comment, Reaction, UserEntry

_IDENTIFIER = r"^[A-Za-z0-9_.-]+$"


class ThreadRef(BaseModel):
    section_id: str = Field(min_length=1, max_length=100, pattern=_IDENTIFIER)
    page_id: str = Field(min_length=1, max_length=100, pattern=_IDENTIFIER)


class ListCommentsInput(ThreadRef):
    page: int = Field(default=1, ge=1)
    page_size: int | None = Field(default=None, ge=1, le=100)


class ListCommentsOutput(BaseModel):
    section_id: str
    page_id: str
    branch: str
    comments: list[Comment]
    page: int
    has_more: bool


class PostCommentInput(ThreadRef):
    body: str = Field(min_length=1)
    page_title: str | None = Field(default=None, max_length=200)
    page_url: str | None = Field(default=None, max_length=2048)

    @field_validator("body")
    @classmethod
    def body_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("body must not be blank")
        return v


class EditCommentInput(ThreadRef):
    comment_id: int = Field(ge=1)
    body: str = Field(min_length=1)


class CommentOutput(BaseModel):
    comment: Comment


class ToggleReactionInput(BaseModel):
    comment_id: int = Field(ge=1)
    reaction: Literal["+1", "-1"]


class ToggleReactionOutput(BaseModel):
    comment_id: int
    reactions: list[Reaction]
    up: int
    down: int


class ModerationListsOutput(BaseModel):
    branch: str
    admins: list[UserEntry]
    banned: list[UserEntry]
