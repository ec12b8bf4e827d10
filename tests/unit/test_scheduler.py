"""Unit tests for the cache cleanup scheduler in schedulers.py.

The cache is replaced by a mock and asyncio.sleep is patched to end the
loop after a fixed number of iterations.
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from issuekeep.config import Settings
from issuekeep.schedulers import run_cache_cleanup_scheduler


def _make_state(interval_hours: int = 6) -> SimpleNamespace:
    settings = Settings(cache={"cleanup_interval_hours": interval_hours})
    return SimpleNamespace(settings=settings, cache=AsyncMock())


def _sleep_then_cancel(iterations: int) -> AsyncMock:
    """asyncio.sleep replacement that returns ``iterations`` times, then cancels."""
    outcomes: list = [None] * iterations + [asyncio.CancelledError()]
    return AsyncMock(side_effect=outcomes)


class TestCacheCleanupScheduler:
    async def test_runs_at_startup(self) -> None:
        state = _make_state()

        with (
            patch("issuekeep.schedulers.asyncio.sleep", _sleep_then_cancel(0)),
            pytest.raises(asyncio.CancelledError),
        ):
            await run_cache_cleanup_scheduler(state)

        state.cache.cleanup_if_due.assert_awaited_once_with(6)

    async def test_sleeps_for_interval_between_sweeps(self) -> None:
        state = _make_state(interval_hours=2)
        mock_sleep = _sleep_then_cancel(3)

        with (
            patch("issuekeep.schedulers.asyncio.sleep", mock_sleep),
            pytest.raises(asyncio.CancelledError),
        ):
            await run_cache_cleanup_scheduler(state)

        assert state.cache.cleanup_if_due.await_count == 4
        assert all(call.args == (7200,) for call in mock_sleep.await_args_list)

    async def test_cleanup_failure_propagates(self) -> None:
        state = _make_state()
        state.cache.cleanup_if_due.side_effect = RuntimeError("disk gone")

        with pytest.raises(RuntimeError):
            await run_cache_cleanup_scheduler(state)
