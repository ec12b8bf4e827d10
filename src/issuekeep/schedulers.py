"""Background scheduler coroutine for the persistent cache sweep."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from issuekeep.state import AppState

log = structlog.get_logger()


async def run_cache_cleanup_scheduler(state: AppState) -> None:
    """Sweep expired cache entries at startup and then on the configured interval."""
    interval_hours = state.settings.cache.cleanup_interval_hours

    # Skipped at startup if another process swept recently
    await state.cache.cleanup_if_due(interval_hours)

    while True:
        await asyncio.sleep(interval_hours * 3600)
        await state.cache.cleanup_if_due(interval_hours)
