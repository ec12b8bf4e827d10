"""The account every write goes out as.

The remote store attributes comments and reactions to the account behind
the configured token, whatever login a caller claims. Authorship checks
therefore compare against this login, resolved once per process with the
store's "who am I" call. Resolution is lazy so the server still starts, and
serves cached reads, while the remote store is unreachable.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from issuekeep.errors import permission_denied

if TYPE_CHECKING:
    from issuekeep.protocols import RemoteStoreProtocol

log = structlog.get_logger()


class ActingAccount:
    def __init__(self, client: RemoteStoreProtocol) -> None:
        self._client = client
        self._login: str | None = None
        self._lock = asyncio.Lock()

    async def login(self) -> str:
        """Login of the token's account. Failures propagate and are retried next call."""
        if self._login is None:
            async with self._lock:
                if self._login is None:
                    self._login = await self._client.get_authenticated_login()
                    log.info("acting_account_resolved", login=self._login)
        return self._login

    async def require(self, claimed: str) -> str:
        """Return the acting login if ``claimed`` names it, else refuse."""
        actual = await self.login()
        if claimed.lower() != actual.lower():
            log.warning("acting_login_mismatch", claimed=claimed, actual=actual)
            raise permission_denied(
                f"Writes are made as '{actual}'; '{claimed}' cannot act through this server."
            )
        return actual
