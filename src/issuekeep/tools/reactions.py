"""Tool handler for toggle_reaction."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from issuekeep.errors import validation_error
from issuekeep.models.records import ReactionType
from issuekeep.models.tools import ToggleReactionInput, ToggleReactionOutput

if TYPE_CHECKING:
    from issuekeep.state import AppState


async def handle(comment_id: int, reaction: str, state: AppState) -> dict:
    """Handle a toggle_reaction tool call. The vote is cast as the acting account."""
    log = structlog.get_logger().bind(tool="toggle_reaction", comment_id=comment_id)
    log.info("handler_called", reaction=reaction)

    try:
        validated = ToggleReactionInput(comment_id=comment_id, reaction=reaction)
    except ValueError as exc:
        raise validation_error(str(exc), "Use reaction '+1' or '-1'.") from exc

    author_login = await state.account.login()
    reactions = await state.reactions.toggle(
        state.namespace,
        validated.comment_id,
        author_login,
        ReactionType(validated.reaction),
    )
    output = ToggleReactionOutput(
        comment_id=validated.comment_id,
        reactions=reactions,
        up=sum(1 for r in reactions if r.type is ReactionType.UP),
        down=sum(1 for r in reactions if r.type is ReactionType.DOWN),
    )
    return output.model_dump(mode="json")
