"""Tool handlers for list_comments, post_comment and edit_comment.

Receive AppState, delegate to the ThreadStore, and return structured dicts.
No MCP or FastMCP imports; server.py handles the MCP wiring.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from issuekeep.errors import validation_error
from issuekeep.models.tools import (
    CommentOutput,
    EditCommentInput,
    ListCommentsInput,
    ListCommentsOutput,
    PostCommentInput,
)

if TYPE_CHECKING:
    from issuekeep.state import AppState


async def handle_list(
    section_id: str,
    page_id: str,
    page: int,
    page_size: int | None,
    state: AppState,
) -> dict:
    """Handle a list_comments tool call."""
    log = structlog.get_logger().bind(tool="list_comments", thread=f"{section_id}/{page_id}")
    log.info("handler_called", page=page)

    try:
        validated = ListCommentsInput(
            section_id=section_id, page_id=page_id, page=page, page_size=page_size
        )
    except ValueError as exc:
        raise validation_error(
            str(exc), "Use identifier-like section and page ids and a page of 1 or more."
        ) from exc

    result = await state.threads.list_page(
        state.namespace,
        validated.section_id,
        validated.page_id,
        validated.page,
        validated.page_size,
    )
    log.info("list_complete", count=len(result.comments), has_more=result.has_more)

    output = ListCommentsOutput(
        section_id=validated.section_id,
        page_id=validated.page_id,
        branch=state.namespace.branch,
        comments=result.comments,
        page=result.page,
        has_more=result.has_more,
    )
    return output.model_dump(mode="json")


async def handle_post(
    section_id: str,
    page_id: str,
    body: str,
    state: AppState,
    *,
    page_title: str | None = None,
    page_url: str | None = None,
) -> dict:
    """Handle a post_comment tool call.

    The comment is attributed to the account behind the configured token.
    """
    log = structlog.get_logger().bind(tool="post_comment", thread=f"{section_id}/{page_id}")
    log.info("handler_called")

    try:
        validated = PostCommentInput(
            section_id=section_id,
            page_id=page_id,
            body=body,
            page_title=page_title,
            page_url=page_url,
        )
    except ValueError as exc:
        raise validation_error(str(exc), "Provide a non-empty body.") from exc

    author_login = await state.account.login()
    comment = await state.threads.append(
        state.namespace,
        validated.section_id,
        validated.page_id,
        author_login,
        validated.body,
        page_title=validated.page_title,
        page_url=validated.page_url,
    )
    return CommentOutput(comment=comment).model_dump(mode="json")


async def handle_edit(
    section_id: str,
    page_id: str,
    comment_id: int,
    body: str,
    state: AppState,
) -> dict:
    """Handle an edit_comment tool call."""
    log = structlog.get_logger().bind(tool="edit_comment", comment_id=comment_id)
    log.info("handler_called")

    try:
        validated = EditCommentInput(
            section_id=section_id,
            page_id=page_id,
            comment_id=comment_id,
            body=body,
        )
    except ValueError as exc:
        raise validation_error(str(exc), "Provide a valid comment id and body.") from exc

    editor_login = await state.account.login()
    comment = await state.threads.edit(
        state.namespace,
        validated.section_id,
        validated.page_id,
        validated.comment_id,
        editor_login,
        validated.body,
    )
    return CommentOutput(comment=comment).model_dump(mode="json")
