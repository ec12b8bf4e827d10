"""MCP server entrypoint.

Responsibilities (and nothing more):
- Configure structlog
- Create AppState via the FastMCP lifespan context manager
- Register tools
- Start the stdio transport
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import TYPE_CHECKING

import aiosqlite
import structlog
from mcp.server.fastmcp import Context, FastMCP
from mcp.types import CallToolResult, TextContent

import issuekeep.tools.comments as t_comments
import issuekeep.tools.moderation as t_moderation
import issuekeep.tools.reactions as t_reactions
from issuekeep import __version__
from issuekeep.cache import PersistentCache
from issuekeep.client import RemoteDocumentClient, build_http_client
from issuekeep.config import Settings
from issuekeep.errors import IssueKeepError
from issuekeep.namespace import build_namespace
from issuekeep.schedulers import run_cache_cleanup_scheduler
from issuekeep.state import AppState, build_state
from issuekeep.storage import SqliteStorage

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once at startup before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [*shared_processors, structlog.processors.JSONRenderer()]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        # stdout carries the MCP JSON-RPC stream
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncGenerator[AppState, None]:
    """Create and tear down all shared resources for the server's lifetime."""
    settings = Settings()
    _setup_logging(settings)

    namespace = build_namespace(settings.remote, settings.namespace)
    log.info("server_starting", version=__version__, namespace=namespace.key)

    http_client = build_http_client(settings.remote)

    db_path = Path(settings.cache.db_path).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    storage = SqliteStorage(db)
    await storage.init_db()
    cache = PersistentCache(
        storage,
        stale_ttl_seconds=settings.cache.stale_ttl_seconds,
        max_entries=settings.cache.max_entries,
    )

    state = build_state(
        settings,
        namespace,
        RemoteDocumentClient(http_client),
        cache,
        http_client=http_client,
    )
    cache_cleanup_task = asyncio.create_task(run_cache_cleanup_scheduler(state))

    if not settings.remote.bot_login:
        log.warning("registry_records_unavailable", reason="remote.bot_login not set")
    log.info("server_started", version=__version__, namespace=namespace.key)

    try:
        yield state
    finally:
        cache_cleanup_task.cancel()
        with suppress(asyncio.CancelledError):
            await cache_cleanup_task
        await state.inflight.close()
        await http_client.aclose()
        await db.close()
        log.info("server_stopping")


# ---------------------------------------------------------------------------
# FastMCP instance and tool registration
# ---------------------------------------------------------------------------

mcp = FastMCP("issuekeep", lifespan=lifespan)
# FastMCP doesn't expose a version kwarg, so set it on the underlying Server
# so the MCP initialize handshake reports our version, not the SDK's.
mcp._mcp_server.version = __version__  # pyright: ignore[reportPrivateUsage]


def _serialise_tool_error(error: IssueKeepError) -> CallToolResult:
    """Convert an IssueKeepError to the MCP tool error result envelope."""
    return CallToolResult(
        content=[TextContent(type="text", text=json.dumps(error.to_dict()))],
        isError=True,
    )


async def _run_tool(tool: str, call: Awaitable[dict]) -> object:
    try:
        return await call
    except IssueKeepError as exc:
        log.warning(
            "tool_error",
            tool=tool,
            code=exc.code,
            message=exc.message,
            recoverable=exc.recoverable,
        )
        return _serialise_tool_error(exc)
    except Exception:
        log.error("tool_unexpected_error", tool=tool, exc_info=True)
        raise


@mcp.tool()
async def list_comments(
    section_id: str,
    page_id: str,
    ctx: Context,
    page: int = 1,
    page_size: int | None = None,
) -> object:
    """List one page of comments on a wiki page, oldest first.

    ``has_more`` is true when the page came back full; request the next page
    to continue.
    """
    state: AppState = ctx.request_context.lifespan_context
    return await _run_tool(
        "list_comments", t_comments.handle_list(section_id, page_id, page, page_size, state)
    )


@mcp.tool()
async def post_comment(
    section_id: str,
    page_id: str,
    body: str,
    ctx: Context,
    page_title: str | None = None,
    page_url: str | None = None,
) -> object:
    """Post a comment on a wiki page, creating its thread on first use.

    The comment is authored by the account behind the server's token.
    """
    state: AppState = ctx.request_context.lifespan_context
    return await _run_tool(
        "post_comment",
        t_comments.handle_post(
            section_id,
            page_id,
            body,
            state,
            page_title=page_title,
            page_url=page_url,
        ),
    )


@mcp.tool()
async def edit_comment(
    section_id: str,
    page_id: str,
    comment_id: int,
    body: str,
    ctx: Context,
) -> object:
    """Edit a comment in place. Only comments by the server's account can be edited."""
    state: AppState = ctx.request_context.lifespan_context
    return await _run_tool(
        "edit_comment",
        t_comments.handle_edit(section_id, page_id, comment_id, body, state),
    )


@mcp.tool()
async def toggle_reaction(comment_id: int, reaction: str, ctx: Context) -> object:
    """Toggle a '+1' or '-1' vote on a comment.

    Voting the opposite of an existing vote switches it.
    """
    state: AppState = ctx.request_context.lifespan_context
    return await _run_tool("toggle_reaction", t_reactions.handle(comment_id, reaction, state))


@mcp.tool()
async def get_moderation_lists(ctx: Context) -> object:
    """Return the admin list and the ban list of the current branch."""
    state: AppState = ctx.request_context.lifespan_context
    return await _run_tool("get_moderation_lists", t_moderation.handle(state))


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
