"""Tool handler for get_moderation_lists."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from issuekeep.models.tools import ModerationListsOutput

if TYPE_CHECKING:
    from issuekeep.state import AppState


async def handle(state: AppState) -> dict:
    log = structlog.get_logger().bind(tool="get_moderation_lists")
    log.info("handler_called")

    admins = await state.admins.get_admins(state.namespace)
    banned = await state.admins.get_banned_users(state.namespace)
    output = ModerationListsOutput(branch=state.namespace.branch, admins=admins, banned=banned)
    return output.model_dump(mode="json", exclude_none=True)
