"""Branch namespaces and label builders.

Every record carries a ``branch:<name>`` label so that otherwise identical
keys used by different deployments of the same repository never collide.
The remote store caps label length at 50 characters; builders truncate the
value part so the prefix always survives.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from issuekeep.config import NamespaceSettings, RemoteSettings

log = structlog.get_logger()

MAX_LABEL_LENGTH = 50


def make_label(prefix: str, value: str | int) -> str:
    """Return ``prefix + value`` with the value truncated to fit the label limit."""
    max_value_length = MAX_LABEL_LENGTH - len(prefix)
    return f"{prefix}{str(value)[:max_value_length]}"


def branch_label(branch: str) -> str:
    return make_label("branch:", branch)


def page_label(section_id: str, page_id: str) -> str:
    return make_label("page:", f"{section_id}/{page_id}")


def user_id_label(user_id: int | str) -> str:
    return make_label("user-id:", user_id)


@dataclass(frozen=True)
class Namespace:
    """Repository coordinates plus the branch discriminator."""

    owner: str
    repo: str
    branch: str

    @property
    def label(self) -> str:
        return branch_label(self.branch)

    @property
    def key(self) -> str:
        return f"{self.owner}/{self.repo}/{self.branch}"


def validate_branch(branch: str, allowed_branches: list[str]) -> bool:
    """An empty allow-list permits every branch."""
    if not allowed_branches:
        return True
    if branch not in allowed_branches:
        log.warning("branch_not_allowed", branch=branch, allowed=allowed_branches)
        return False
    return True


def resolve_branch(settings: NamespaceSettings) -> str:
    """Pick the branch discriminator for this process.

    With namespaces disabled every process shares ``default_branch``. With
    them enabled, a configured branch is used when it passes the allow-list,
    otherwise the default is used.
    """
    if not settings.enabled:
        return settings.default_branch
    if settings.branch and validate_branch(settings.branch, settings.allowed_branches):
        return settings.branch
    if settings.branch:
        log.warning("branch_fallback_to_default", default=settings.default_branch)
    return settings.default_branch


def build_namespace(remote: RemoteSettings, settings: NamespaceSettings) -> Namespace:
    return Namespace(owner=remote.owner, repo=remote.repo, branch=resolve_branch(settings))
