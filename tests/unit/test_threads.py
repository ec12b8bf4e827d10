"""Unit tests for issuekeep.threads."""

from __future__ import annotations

import pytest

from issuekeep.account import ActingAccount
from issuekeep.errors import ErrorCode, IssueKeepError, rate_limited
from issuekeep.ratelimit import RateLimiter
from issuekeep.threads import MAX_BODY_LENGTH, THREAD_LABEL, ThreadStore, thread_key

banned_users: set[str] = set()


async def _is_banned(namespace, login: str) -> bool:
    return login in banned_users


@pytest.fixture()
def threads(remote, records, cache, settings, clock) -> ThreadStore:
    banned_users.clear()
    return ThreadStore(
        remote,
        records,
        cache,
        RateLimiter(settings.rate_limits, clock=clock.monotonic),
        settings.cache,
        settings.threads,
        account=ActingAccount(remote),
        ban_check=_is_banned,
    )


def seed_thread(remote, namespace, authors: list[str]) -> int:
    record = remote.add_record(
        namespace,
        "[Comments] Intro",
        "",
        {THREAD_LABEL, "page:docs/intro"},
        author="someone",
    )
    remote.add_comments(record.number, authors)
    return record.number


class TestThreadKey:
    def test_key_carries_page_label(self) -> None:
        key = thread_key("docs", "intro")

        assert key.name == "thread:docs/intro"
        assert key.labels == frozenset({"wiki-comments", "page:docs/intro"})
        assert key.verify_writer is False


class TestListPage:
    async def test_empty_thread_creates_nothing(self, threads, remote, namespace) -> None:
        page = await threads.list_page(namespace, "docs", "intro")

        assert page.comments == []
        assert page.has_more is False
        assert remote.calls["create_record"] == 0

    async def test_pages_cover_every_comment_once(self, threads, remote, namespace) -> None:
        seed_thread(remote, namespace, [f"user{i}" for i in range(25)])

        seen = []
        page_number = 1
        while True:
            page = await threads.list_page(namespace, "docs", "intro", page=page_number)
            seen.extend(c.id for c in page.comments)
            if not page.has_more:
                break
            page_number += 1

        assert page_number == 3
        assert len(seen) == 25
        assert len(set(seen)) == 25
        assert seen == sorted(seen)

    async def test_full_last_page_reports_more(self, threads, remote, namespace) -> None:
        seed_thread(remote, namespace, [f"user{i}" for i in range(10)])

        first = await threads.list_page(namespace, "docs", "intro")
        second = await threads.list_page(namespace, "docs", "intro", page=2)

        assert first.has_more is True
        assert second.comments == []
        assert second.has_more is False

    async def test_custom_page_size(self, threads, remote, namespace) -> None:
        seed_thread(remote, namespace, ["a", "b", "c"])

        page = await threads.list_page(namespace, "docs", "intro", page=1, page_size=2)

        assert [c.author_login for c in page.comments] == ["a", "b"]
        assert page.has_more is True

    async def test_page_zero_is_rejected(self, threads, namespace) -> None:
        with pytest.raises(IssueKeepError) as exc_info:
            await threads.list_page(namespace, "docs", "intro", page=0)

        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR

    async def test_page_is_cached(self, threads, remote, namespace) -> None:
        seed_thread(remote, namespace, ["a"])

        await threads.list_page(namespace, "docs", "intro")
        await threads.list_page(namespace, "docs", "intro")

        assert remote.calls["list_comments"] == 1

    async def test_rate_limited_serves_stale_page(self, threads, remote, namespace, clock) -> None:
        seed_thread(remote, namespace, ["a", "b"])
        await threads.list_page(namespace, "docs", "intro")
        clock.advance(3600)
        remote.fail_next("list_comments", rate_limited("slow down", 30))

        page = await threads.list_page(namespace, "docs", "intro")

        assert [c.author_login for c in page.comments] == ["a", "b"]

    async def test_other_failures_propagate(self, threads, remote, namespace) -> None:
        seed_thread(remote, namespace, ["a"])
        remote.fail_next(
            "list_comments",
            IssueKeepError(
                code=ErrorCode.REMOTE_FAILED, message="500", suggestion="", recoverable=True
            ),
        )

        with pytest.raises(IssueKeepError) as exc_info:
            await threads.list_page(namespace, "docs", "intro")

        assert exc_info.value.code == ErrorCode.REMOTE_FAILED


class TestAppend:
    async def test_first_append_creates_thread(self, threads, remote, namespace) -> None:
        comment = await threads.append(
            namespace, "docs", "intro", "alice", "Hello", page_title="Intro"
        )

        assert comment.body == "Hello"
        assert remote.calls["create_record"] == 1
        record = next(iter(remote.records.values()))
        assert record.title == "[Comments] Intro"
        assert {THREAD_LABEL, "page:docs/intro", namespace.label} <= record.labels
        assert "`docs/intro`" in record.body

    async def test_append_reuses_existing_thread(self, threads, remote, namespace) -> None:
        seed_thread(remote, namespace, ["a"])

        await threads.append(namespace, "docs", "intro", "alice", "Hello")

        assert remote.calls["create_record"] == 0

    async def test_append_invalidates_cached_pages(
        self, threads, remote, namespace, clock
    ) -> None:
        seed_thread(remote, namespace, ["a"])
        before = await threads.list_page(namespace, "docs", "intro")

        await threads.append(namespace, "docs", "intro", "alice", "Hello")
        after = await threads.list_page(namespace, "docs", "intro")

        assert len(before.comments) == 1
        assert len(after.comments) == 2
        assert after.comments[-1].body == "Hello"

    async def test_body_is_trimmed(self, threads, namespace) -> None:
        comment = await threads.append(namespace, "docs", "intro", "alice", "  hi  ")

        assert comment.body == "hi"

    @pytest.mark.parametrize("body", ["", "   ", "x" * (MAX_BODY_LENGTH + 1)])
    async def test_invalid_body_rejected(self, threads, remote, namespace, body) -> None:
        with pytest.raises(IssueKeepError) as exc_info:
            await threads.append(namespace, "docs", "intro", "alice", body)

        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR
        assert remote.calls["create_comment"] == 0

    async def test_banned_user_refused(self, threads, remote, namespace) -> None:
        remote.acting_login = "mallory"
        banned_users.add("mallory")

        with pytest.raises(IssueKeepError) as exc_info:
            await threads.append(namespace, "docs", "intro", "mallory", "spam")

        assert exc_info.value.code == ErrorCode.PERMISSION_DENIED
        assert remote.calls["create_record"] == 0

    async def test_claimed_login_must_be_acting_account(self, threads, remote, namespace) -> None:
        with pytest.raises(IssueKeepError) as exc_info:
            await threads.append(namespace, "docs", "intro", "bob", "Hello")

        assert exc_info.value.code == ErrorCode.PERMISSION_DENIED
        assert remote.calls["create_record"] == 0
        assert remote.calls["create_comment"] == 0

    async def test_ban_check_uses_acting_account(self, threads, remote, namespace) -> None:
        banned_users.add("alice")

        # Claiming another login cannot get around the ban
        with pytest.raises(IssueKeepError):
            await threads.append(namespace, "docs", "intro", "bob", "spam")
        with pytest.raises(IssueKeepError) as exc_info:
            await threads.append(namespace, "docs", "intro", "alice", "spam")

        assert "banned" in exc_info.value.message
        assert remote.calls["create_comment"] == 0

    async def test_second_append_within_cooldown_is_rate_limited(
        self, threads, remote, namespace, clock
    ) -> None:
        await threads.append(namespace, "docs", "intro", "alice", "one")

        with pytest.raises(IssueKeepError) as exc_info:
            await threads.append(namespace, "docs", "intro", "alice", "two")

        assert exc_info.value.code == ErrorCode.RATE_LIMITED
        assert remote.calls["create_comment"] == 1

        clock.advance(5)
        await threads.append(namespace, "docs", "intro", "alice", "two")
        assert remote.calls["create_comment"] == 2


class TestEdit:
    async def test_author_can_edit(self, threads, remote, namespace) -> None:
        number = seed_thread(remote, namespace, ["alice"])
        comment_id = remote.comments[number][0].id

        updated = await threads.edit(namespace, "docs", "intro", comment_id, "Alice", "fixed")

        assert updated.body == "fixed"

    async def test_posted_comment_is_editable_by_its_account(
        self, threads, remote, namespace
    ) -> None:
        remote.acting_login = "bob"
        posted = await threads.append(namespace, "docs", "intro", "bob", "tpyo")

        updated = await threads.edit(namespace, "docs", "intro", posted.id, "bob", "typo")

        assert posted.author_login == "bob"
        assert updated.body == "typo"

    async def test_other_users_comment_cannot_be_edited(self, threads, remote, namespace) -> None:
        number = seed_thread(remote, namespace, ["bob"])
        comment_id = remote.comments[number][0].id

        with pytest.raises(IssueKeepError) as exc_info:
            await threads.edit(namespace, "docs", "intro", comment_id, "alice", "hijack")

        assert exc_info.value.code == ErrorCode.PERMISSION_DENIED
        assert remote.calls["update_comment"] == 0

    async def test_claimed_editor_must_be_acting_account(self, threads, remote, namespace) -> None:
        number = seed_thread(remote, namespace, ["bob"])
        comment_id = remote.comments[number][0].id

        with pytest.raises(IssueKeepError) as exc_info:
            await threads.edit(namespace, "docs", "intro", comment_id, "bob", "hijack")

        assert exc_info.value.code == ErrorCode.PERMISSION_DENIED
        assert remote.calls["get_comment"] == 0

    async def test_edit_invalidates_pages(self, threads, remote, namespace) -> None:
        number = seed_thread(remote, namespace, ["alice"])
        comment_id = remote.comments[number][0].id
        await threads.list_page(namespace, "docs", "intro")

        await threads.edit(namespace, "docs", "intro", comment_id, "alice", "fixed")
        page = await threads.list_page(namespace, "docs", "intro")

        assert page.comments[0].body == "fixed"

    async def test_missing_comment_is_not_found(self, threads, namespace) -> None:
        with pytest.raises(IssueKeepError) as exc_info:
            await threads.edit(namespace, "docs", "intro", 424242, "alice", "x")

        assert exc_info.value.code == ErrorCode.NOT_FOUND
