"""Same-process de-duplication of concurrent get-or-create calls.

The coordinator maps a key to the future of the work currently producing
its value. Lookup and registration happen with no ``await`` in between, so
on one event loop they are atomic with respect to every other caller: the
first caller registers its future before any I/O starts and every later
caller awaits that same future.

A settled future stays registered for a grace period. The remote store
takes a few seconds to make a freshly created document visible to list
queries; without the grace window a caller arriving just after completion
would miss the cache, query, see nothing and create a duplicate.

Grace timers are ``loop.call_later`` handles that are cancelled when an
entry is forgotten early and when the coordinator is closed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

log = structlog.get_logger()

T = TypeVar("T")


def _consume_exception(future: asyncio.Future) -> None:
    # Mark the exception as retrieved: callers that abandoned interest
    # must not trigger "exception was never retrieved" warnings.
    if not future.cancelled():
        future.exception()


class InFlightCoordinator:
    """Process-scoped registry of pending work keyed by logical record key."""

    def __init__(self, grace_seconds: float = 5.0) -> None:
        self._grace_seconds = grace_seconds
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def pending(self, key: str) -> asyncio.Future[Any] | None:
        return self._pending.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    async def run(self, key: str, work: Callable[[], Awaitable[T]]) -> T:
        """Return the result of ``work`` for ``key``, sharing it with concurrent callers.

        If a future is already registered under ``key`` (running, or settled
        within the grace window) its outcome is returned and ``work`` is not
        called. Otherwise ``work`` runs as its own task: cancelling a waiting
        caller does not cancel the work.
        """
        future = self._pending.get(key)
        if future is None:
            future = self._register(key, work)
        else:
            log.debug("inflight_joined", key=key)
        return await asyncio.shield(future)

    def _register(self, key: str, work: Callable[[], Awaitable[T]]) -> asyncio.Future[T]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        future.add_done_callback(_consume_exception)
        self._pending[key] = future

        task = loop.create_task(self._drive(key, future, work))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(lambda t: self._on_task_done(t, key, future))
        log.debug("inflight_registered", key=key)
        return future

    def _on_task_done(
        self, task: asyncio.Task[None], key: str, future: asyncio.Future[Any]
    ) -> None:
        # A task cancelled before its first step never reaches _drive's handlers
        if task.cancelled() and not future.done():
            future.cancel()
            self._expire(key, future)

    async def _drive(
        self,
        key: str,
        future: asyncio.Future[T],
        work: Callable[[], Awaitable[T]],
    ) -> None:
        try:
            result = await work()
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
            self._expire(key, future)
            raise
        except Exception as exc:
            if not future.done():
                future.set_exception(exc)
        else:
            if not future.done():
                future.set_result(result)
        self._schedule_expiry(key, future)

    def _schedule_expiry(self, key: str, future: asyncio.Future[Any]) -> None:
        if self._pending.get(key) is not future:
            return  # Forgotten while running
        if self._grace_seconds <= 0:
            self._expire(key, future)
            return
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self._grace_seconds, self._expire, key, future)

    def _expire(self, key: str, future: asyncio.Future[Any]) -> None:
        # Only remove the entry this timer was scheduled for
        if self._pending.get(key) is future:
            del self._pending[key]
            self._timers.pop(key, None)
            log.debug("inflight_expired", key=key)

    def forget(self, key: str) -> None:
        """Drop ``key`` immediately, cancelling its grace timer.

        Called after a successful mutation: the settled value is known to be
        out of date. Work still running for the key continues but its result
        is no longer shared with new callers.
        """
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        if self._pending.pop(key, None) is not None:
            log.debug("inflight_forgotten", key=key)

    async def close(self) -> None:
        """Cancel grace timers and running work. Called once at shutdown."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
