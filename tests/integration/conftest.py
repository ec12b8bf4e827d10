"""Integration test fixtures.

Provides a fully wired AppState around the in-memory remote store and
SQLite cache from tests/conftest.py, plus a baseline environment for
subprocess-based MCP wire tests.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from issuekeep.state import AppState, build_state

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture()
def subprocess_env(tmp_path: Path) -> dict[str, str]:
    """Baseline env dict for subprocess-based MCP integration tests.

    Overrides any local issuekeep.yaml by pointing the cache at an isolated
    tmp directory and the remote store at an address that refuses
    connections, so any test that reaches the network fails loudly.
    """
    env = os.environ.copy()
    env["ISSUEKEEP__CACHE__DB_PATH"] = str(tmp_path / "cache.db")
    env["ISSUEKEEP__REMOTE__BASE_URL"] = "http://127.0.0.1:1"
    env["ISSUEKEEP__REMOTE__OWNER"] = "acme"
    env["ISSUEKEEP__REMOTE__REPO"] = "wiki"
    env["ISSUEKEEP__REMOTE__BOT_LOGIN"] = "wiki-bot"
    env["ISSUEKEEP__NAMESPACE__BRANCH"] = "main"
    env["ISSUEKEEP__LOGGING__LEVEL"] = "WARNING"
    return env


@pytest.fixture()
async def app_state(settings, namespace, remote, cache) -> AppState:
    """Full AppState wired for tool handler tests."""
    remote.users.update({"alice": 2, "bob": 3, "mallory": 66})
    state = build_state(settings, namespace, remote, cache)
    yield state
    await state.inflight.close()
