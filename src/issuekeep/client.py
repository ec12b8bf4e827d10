"""Remote document client for a GitHub-style issue tracker.

All network I/O against the remote store goes through a single
RemoteDocumentClient shared by every store. The client receives an
httpx.AsyncClient via constructor injection; the lifespan owns the client
lifecycle. Every non-2xx outcome is classified into an ``ErrorCode`` so that
callers can branch on rate limits and permission failures without looking
at HTTP details.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from issuekeep.errors import ErrorCode, IssueKeepError
from issuekeep.models.records import Comment, Contributor, Reaction, ReactionType, Record

if TYPE_CHECKING:
    from issuekeep.config import RemoteSettings
    from issuekeep.namespace import Namespace

log = structlog.get_logger()

PER_PAGE_MAX = 100


def build_http_client(settings: RemoteSettings) -> httpx.AsyncClient:
    """Create the shared httpx client. Called once at startup."""
    headers = {
        "Accept": "application/vnd.github+json",
        "User-Agent": "issuekeep/1.0",
    }
    if settings.token:
        headers["Authorization"] = f"Bearer {settings.token}"
    return httpx.AsyncClient(
        base_url=settings.base_url,
        timeout=httpx.Timeout(settings.timeout_seconds),
        headers=headers,
        limits=httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        ),
    )


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, dict):
        return str(payload.get("message", ""))
    return ""


def _retry_after(response: httpx.Response) -> float | None:
    """Seconds to wait, from ``retry-after`` or ``x-ratelimit-reset``."""
    retry_after = response.headers.get("retry-after")
    if retry_after is not None:
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            pass
    reset = response.headers.get("x-ratelimit-reset")
    if reset is not None:
        try:
            return max(0.0, float(reset) - time.time())
        except ValueError:
            pass
    return None


def _is_rate_limited(response: httpx.Response, message: str) -> bool:
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    if response.headers.get("x-ratelimit-remaining") == "0":
        return True
    return "rate limit" in message.lower()


def _is_already_exists(response: httpx.Response) -> bool:
    try:
        payload = response.json()
    except ValueError:
        return False
    errors = payload.get("errors", []) if isinstance(payload, dict) else []
    return any(isinstance(e, dict) and e.get("code") == "already_exists" for e in errors)


def classify_response(response: httpx.Response, action: str) -> IssueKeepError:
    """Translate a non-2xx response into a classified IssueKeepError."""
    status = response.status_code
    message = _error_message(response)
    detail = f"HTTP {status} during {action}" + (f": {message}" if message else "")

    if _is_rate_limited(response, message):
        return IssueKeepError(
            code=ErrorCode.RATE_LIMITED,
            message=detail,
            suggestion="The remote store is rate limiting this client. Try again later.",
            recoverable=True,
            retry_after=_retry_after(response),
        )
    if status in (404, 410):
        return IssueKeepError(
            code=ErrorCode.NOT_FOUND,
            message=detail,
            suggestion="The record or comment does not exist or is no longer available.",
            recoverable=False,
        )
    if status in (401, 403):
        return IssueKeepError(
            code=ErrorCode.PERMISSION_DENIED,
            message=detail,
            suggestion="The configured credentials are not allowed to perform this action.",
            recoverable=False,
        )
    if status == 422 and _is_already_exists(response):
        return IssueKeepError(
            code=ErrorCode.ALREADY_EXISTS,
            message=detail,
            suggestion="Another writer created this document first; re-read it.",
            recoverable=True,
        )
    if status in (400, 422):
        return IssueKeepError(
            code=ErrorCode.VALIDATION_ERROR,
            message=detail,
            suggestion="The request was rejected as malformed.",
            recoverable=False,
        )
    return IssueKeepError(
        code=ErrorCode.REMOTE_FAILED,
        message=detail,
        suggestion="The remote store may be temporarily unavailable.",
        recoverable=True,
    )


def _label_names(raw_labels: list[Any]) -> frozenset[str]:
    # The API returns label objects; older payloads return plain strings
    return frozenset(
        label if isinstance(label, str) else label.get("name", "") for label in raw_labels
    )


def parse_record(payload: dict) -> Record:
    return Record(
        number=payload["number"],
        title=payload.get("title", ""),
        body=payload.get("body") or "",
        labels=_label_names(payload.get("labels", [])),
        locked=payload.get("locked", False),
        author_login=(payload.get("user") or {}).get("login", ""),
        state=payload.get("state", "open"),
    )


def parse_comment(payload: dict) -> Comment:
    user = payload.get("user") or {}
    return Comment(
        id=payload["id"],
        author_id=user.get("id"),
        author_login=user.get("login", ""),
        body=payload.get("body") or "",
        created_at=payload["created_at"],
        updated_at=payload.get("updated_at") or payload["created_at"],
    )


def parse_reaction(payload: dict) -> Reaction:
    return Reaction(
        id=payload["id"],
        type=ReactionType(payload["content"]),
        author_login=(payload.get("user") or {}).get("login", ""),
    )


class RemoteDocumentClient:
    """Typed wrapper over the issue tracker REST API."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
    ) -> Any:
        """Issue one request and return the decoded JSON body (``None`` for 204).

        Raises IssueKeepError for network failures and non-2xx responses.
        """
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.HTTPError as exc:
            raise IssueKeepError(
                code=ErrorCode.REMOTE_FAILED,
                message=f"Network error during {action}: {exc}",
                suggestion="The remote store may be temporarily unavailable.",
                recoverable=True,
            ) from exc

        if not response.is_success:
            error = classify_response(response, action)
            log.warning(
                "remote_request_failed",
                action=action,
                status_code=response.status_code,
                code=error.code,
            )
            raise error

        log.debug("remote_request_complete", action=action, status_code=response.status_code)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    @staticmethod
    def _repo_path(namespace: Namespace) -> str:
        return f"/repos/{namespace.owner}/{namespace.repo}"

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def list_by_labels(self, namespace: Namespace, labels: frozenset[str]) -> list[Record]:
        """List open records carrying every label in ``labels`` plus the namespace label."""
        all_labels = sorted(labels | {namespace.label})
        payload = await self._request(
            "GET",
            f"{self._repo_path(namespace)}/issues",
            "list_by_labels",
            params={
                "labels": ",".join(all_labels),
                "state": "open",
                "per_page": PER_PAGE_MAX,
            },
        )
        # The issues endpoint also returns pull requests
        return [parse_record(item) for item in payload if "pull_request" not in item]

    async def create_record(
        self,
        namespace: Namespace,
        title: str,
        body: str,
        labels: frozenset[str],
        *,
        lock: bool = False,
    ) -> Record:
        payload = await self._request(
            "POST",
            f"{self._repo_path(namespace)}/issues",
            "create_record",
            json={"title": title, "body": body, "labels": sorted(labels | {namespace.label})},
        )
        record = parse_record(payload)
        log.info("record_created", number=record.number, title=title)
        if lock:
            await self._request(
                "PUT",
                f"{self._repo_path(namespace)}/issues/{record.number}/lock",
                "lock_record",
                json={"lock_reason": "resolved"},
            )
            record = record.model_copy(update={"locked": True})
        return record

    async def update_record_body(self, namespace: Namespace, number: int, body: str) -> Record:
        payload = await self._request(
            "PATCH",
            f"{self._repo_path(namespace)}/issues/{number}",
            "update_record_body",
            json={"body": body},
        )
        return parse_record(payload)

    async def close_record(self, namespace: Namespace, number: int) -> Record:
        payload = await self._request(
            "PATCH",
            f"{self._repo_path(namespace)}/issues/{number}",
            "close_record",
            json={"state": "closed"},
        )
        return parse_record(payload)

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    async def list_comments(
        self, namespace: Namespace, number: int, page: int, page_size: int
    ) -> list[Comment]:
        payload = await self._request(
            "GET",
            f"{self._repo_path(namespace)}/issues/{number}/comments",
            "list_comments",
            params={"page": page, "per_page": page_size},
        )
        return [parse_comment(item) for item in payload]

    async def get_comment(self, namespace: Namespace, comment_id: int) -> Comment:
        payload = await self._request(
            "GET",
            f"{self._repo_path(namespace)}/issues/comments/{comment_id}",
            "get_comment",
        )
        return parse_comment(payload)

    async def create_comment(self, namespace: Namespace, number: int, body: str) -> Comment:
        payload = await self._request(
            "POST",
            f"{self._repo_path(namespace)}/issues/{number}/comments",
            "create_comment",
            json={"body": body},
        )
        return parse_comment(payload)

    async def update_comment(self, namespace: Namespace, comment_id: int, body: str) -> Comment:
        payload = await self._request(
            "PATCH",
            f"{self._repo_path(namespace)}/issues/comments/{comment_id}",
            "update_comment",
            json={"body": body},
        )
        return parse_comment(payload)

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------

    async def list_reactions(self, namespace: Namespace, comment_id: int) -> list[Reaction]:
        payload = await self._request(
            "GET",
            f"{self._repo_path(namespace)}/issues/comments/{comment_id}/reactions",
            "list_reactions",
            params={"per_page": PER_PAGE_MAX},
        )
        return [parse_reaction(item) for item in payload]

    async def create_reaction(
        self, namespace: Namespace, comment_id: int, reaction_type: ReactionType
    ) -> Reaction:
        payload = await self._request(
            "POST",
            f"{self._repo_path(namespace)}/issues/comments/{comment_id}/reactions",
            "create_reaction",
            json={"content": str(reaction_type)},
        )
        return parse_reaction(payload)

    async def delete_reaction(
        self, namespace: Namespace, comment_id: int, reaction_id: int
    ) -> None:
        await self._request(
            "DELETE",
            f"{self._repo_path(namespace)}/issues/comments/{comment_id}/reactions/{reaction_id}",
            "delete_reaction",
        )

    # ------------------------------------------------------------------
    # Repository and users
    # ------------------------------------------------------------------

    async def get_owner_id(self, namespace: Namespace) -> int:
        payload = await self._request("GET", self._repo_path(namespace), "get_repository")
        return payload["owner"]["id"]

    async def get_authenticated_login(self) -> str:
        """Login of the account behind the configured token."""
        payload = await self._request("GET", "/user", "get_authenticated_user")
        return payload["login"]

    async def get_user_id(self, login: str) -> int:
        payload = await self._request("GET", f"/users/{login}", "get_user")
        return payload["id"]

    async def list_contributors(self, namespace: Namespace) -> list[Contributor]:
        payload = await self._request(
            "GET",
            f"{self._repo_path(namespace)}/contributors",
            "list_contributors",
            params={"per_page": PER_PAGE_MAX},
        )
        return [
            Contributor(
                login=item["login"],
                contributions=item.get("contributions", 0),
                avatar_url=item.get("avatar_url"),
                profile_url=item.get("html_url"),
            )
            for item in payload or []
        ]
