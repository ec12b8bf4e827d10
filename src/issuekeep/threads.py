"""Page-scoped, append-only comment threads.

A thread is the comment list of one record labelled ``wiki-comments`` plus
the page label. The record is created on the first append, never on a read:
listing a page nobody has commented on costs one label query and creates
nothing.

Pages of a thread are cached independently. The remote store cannot say
which page a new comment lands on, so every write clears all cached pages of
the thread rather than patching one.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog

from issuekeep.errors import ErrorCode, IssueKeepError, permission_denied, validation_error
from issuekeep.models.records import Comment, CommentPage, RecordClass, RecordDraft, RecordKey
from issuekeep.namespace import page_label
from issuekeep.ratelimit import RateCategory

if TYPE_CHECKING:
    from issuekeep.account import ActingAccount
    from issuekeep.cache import PersistentCache
    from issuekeep.config import CacheSettings, ThreadSettings
    from issuekeep.namespace import Namespace
    from issuekeep.protocols import RemoteStoreProtocol
    from issuekeep.ratelimit import RateLimiter
    from issuekeep.records import SingletonRecordManager

log = structlog.get_logger()

THREAD_LABEL = "wiki-comments"
MAX_BODY_LENGTH = 65536

BanCheck = Callable[["Namespace", str], Awaitable[bool]]


def thread_key(section_id: str, page_id: str) -> RecordKey:
    return RecordKey(
        name=f"thread:{section_id}/{page_id}",
        labels=frozenset({THREAD_LABEL, page_label(section_id, page_id)}),
        kind=RecordClass.PAGE,
        verify_writer=False,
    )


def _pages_prefix(namespace: Namespace, section_id: str, page_id: str) -> str:
    return f"thread:{namespace.key}:{section_id}/{page_id}:"


def _validate_body(body: str) -> str:
    body = body.strip()
    if not body:
        raise validation_error("Comment body is empty.", "Write something before posting.")
    if len(body) > MAX_BODY_LENGTH:
        raise validation_error(
            f"Comment body is {len(body)} characters long; the limit is {MAX_BODY_LENGTH}.",
            "Shorten the comment.",
        )
    return body


class ThreadStore:
    def __init__(
        self,
        client: RemoteStoreProtocol,
        records: SingletonRecordManager,
        cache: PersistentCache,
        rate_limiter: RateLimiter,
        cache_settings: CacheSettings,
        thread_settings: ThreadSettings,
        *,
        account: ActingAccount,
        ban_check: BanCheck | None = None,
    ) -> None:
        self._client = client
        self._account = account
        self._records = records
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._cache_settings = cache_settings
        self._thread_settings = thread_settings
        self._ban_check = ban_check

    async def list_page(
        self,
        namespace: Namespace,
        section_id: str,
        page_id: str,
        page: int = 1,
        page_size: int | None = None,
    ) -> CommentPage:
        """Return one page of comments in creation order.

        ``has_more`` is true when the page came back full. A thread whose
        length is an exact multiple of the page size therefore reports one
        extra, empty page; the alternative is a count query on every read.
        """
        if page < 1:
            raise validation_error(f"Page must be 1 or greater, got {page}.", "Use page=1.")
        page_size = page_size or self._thread_settings.page_size
        cache_key = f"{_pages_prefix(namespace, section_id, page_id)}{page}:{page_size}"

        cached = await self._cache.get(cache_key)
        if cached is not None:
            return CommentPage.model_validate(cached)

        record = await self._records.find(namespace, thread_key(section_id, page_id))
        if record is None:
            return CommentPage(comments=[], page=page, has_more=False)

        try:
            comments = await self._client.list_comments(namespace, record.number, page, page_size)
        except IssueKeepError as exc:
            if exc.code != ErrorCode.RATE_LIMITED:
                raise
            stale = await self._cache.get(cache_key, allow_stale=True)
            if stale is None:
                raise
            log.warning("thread_page_served_stale", key=cache_key)
            return CommentPage.model_validate(stale)

        result = CommentPage(comments=comments, page=page, has_more=len(comments) == page_size)
        await self._cache.set(
            cache_key, result.model_dump(mode="json"), self._cache_settings.comments_ttl_seconds
        )
        log.debug(
            "thread_page_fetched",
            thread=f"{section_id}/{page_id}",
            page=page,
            count=len(comments),
        )
        return result

    async def append(
        self,
        namespace: Namespace,
        section_id: str,
        page_id: str,
        author_login: str,
        body: str,
        *,
        author_id: int | None = None,
        page_title: str | None = None,
        page_url: str | None = None,
    ) -> Comment:
        """Post a comment, creating the thread record on first use.

        ``author_login`` must name the acting account: the remote store
        attributes the comment to it regardless of who asks.
        """
        body = _validate_body(body)
        author_login = await self._account.require(author_login)
        if self._ban_check is not None and await self._ban_check(namespace, author_login):
            raise permission_denied(f"User '{author_login}' is banned from commenting.")
        self._rate_limiter.enforce(RateCategory.COMMENT)

        title = page_title or f"{section_id}/{page_id}"

        def draft() -> RecordDraft:
            lines = [
                f"**Comments for:** {title}",
                f"**Page ID:** `{section_id}/{page_id}`",
            ]
            if page_url:
                lines.append(f"**Page URL:** {page_url}")
            lines.append(f"**Branch:** {namespace.branch}")
            lines.append("")
            lines.append("This issue collects the comments for the page above.")
            return RecordDraft(title=f"[Comments] {title}", body="\n".join(lines))

        record = await self._records.get_or_create(
            namespace, thread_key(section_id, page_id), draft
        )
        comment = await self._client.create_comment(namespace, record.number, body)
        await self._invalidate_pages(namespace, section_id, page_id)
        log.info(
            "comment_appended",
            thread=f"{section_id}/{page_id}",
            comment_id=comment.id,
            author=author_login,
            author_id=author_id,
        )
        return comment

    async def edit(
        self,
        namespace: Namespace,
        section_id: str,
        page_id: str,
        comment_id: int,
        editor_login: str,
        body: str,
    ) -> Comment:
        """Rewrite a comment in place. Only its author may edit it."""
        body = _validate_body(body)
        editor_login = await self._account.require(editor_login)
        current = await self._client.get_comment(namespace, comment_id)
        if current.author_login.lower() != editor_login.lower():
            log.warning(
                "comment_edit_refused",
                comment_id=comment_id,
                editor=editor_login,
                author=current.author_login,
            )
            raise permission_denied(f"Only {current.author_login} may edit comment {comment_id}.")

        updated = await self._client.update_comment(namespace, comment_id, body)
        await self._invalidate_pages(namespace, section_id, page_id)
        log.info("comment_edited", comment_id=comment_id, editor=editor_login)
        return updated

    async def _invalidate_pages(self, namespace: Namespace, section_id: str, page_id: str) -> None:
        await self._cache.invalidate_prefix(_pages_prefix(namespace, section_id, page_id))
