"""Client-side write rate limiting.

Each category has a cooldown since the last accepted action and any number
of sliding windows capping the count of accepted actions. The gate runs
before a write reaches the remote store, so the remote store's own abuse
detection is never the first line of defence.

Timestamps are only recorded for allowed calls: a rejected attempt does not
extend the wait.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from issuekeep.errors import rate_limited

if TYPE_CHECKING:
    from issuekeep.config import RateLimitRule, RateLimitSettings

log = structlog.get_logger()


class RateCategory(StrEnum):
    COMMENT = "comment"
    REACTION = "reaction"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: str | None = None
    retry_after_seconds: float | None = None


class RateLimiter:
    """Cooldown plus sliding-window gate per write category."""

    def __init__(
        self,
        settings: RateLimitSettings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rules: dict[RateCategory, RateLimitRule] = {
            RateCategory.COMMENT: settings.comment,
            RateCategory.REACTION: settings.reaction,
        }
        self._clock = clock
        self._history: dict[RateCategory, deque[float]] = {c: deque() for c in RateCategory}
        self._last_accepted: dict[RateCategory, float] = {}

    def check(self, category: RateCategory, *, relaxed_cooldown: bool = False) -> RateLimitDecision:
        """Decide whether one more ``category`` action may run now.

        ``relaxed_cooldown`` skips the cooldown gate but not the window caps;
        switching a reaction between up and down uses it.
        """
        rule = self._rules[category]
        history = self._history[category]
        now = self._clock()

        widest = max((w.seconds for w in rule.windows), default=0.0)
        while history and now - history[0] >= widest:
            history.popleft()

        last = self._last_accepted.get(category)
        if not relaxed_cooldown and last is not None and rule.cooldown_seconds > 0:
            elapsed = now - last
            if elapsed < rule.cooldown_seconds:
                wait = rule.cooldown_seconds - elapsed
                return RateLimitDecision(
                    allowed=False,
                    reason=f"Please wait {wait:.1f}s between {category} actions.",
                    retry_after_seconds=wait,
                )

        for window in rule.windows:
            in_window = [t for t in history if now - t < window.seconds]
            if len(in_window) >= window.max_count:
                # The oldest timestamp in the window is the next to fall out
                wait = window.seconds - (now - in_window[0])
                return RateLimitDecision(
                    allowed=False,
                    reason=(
                        f"At most {window.max_count} {category} actions per "
                        f"{window.seconds:g}s."
                    ),
                    retry_after_seconds=wait,
                )

        history.append(now)
        self._last_accepted[category] = now
        return RateLimitDecision(allowed=True)

    def enforce(self, category: RateCategory, *, relaxed_cooldown: bool = False) -> None:
        """Like ``check`` but raises ``RATE_LIMITED`` when the action is refused."""
        decision = self.check(category, relaxed_cooldown=relaxed_cooldown)
        if not decision.allowed:
            log.info(
                "rate_limit_refused",
                category=category,
                retry_after=decision.retry_after_seconds,
            )
            raise rate_limited(decision.reason or "Rate limited.", decision.retry_after_seconds)
