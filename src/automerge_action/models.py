from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal


MergeMethod = Literal["merge", "squash", "rebase"]
PullRequestState = Literal["open", "closed"]
StatusCheckSource = Literal["rulesets", "protection", "none"]

MERGE_METHODS: tuple[MergeMethod, ...] = ("merge", "squash", "rebase")


class MergeableState(Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    BLOCKED = "blocked"
    DRAFT = "draft"
    HAS_HOOKS = "has_hooks"
    UNKNOWN = "unknown"
    UNSTABLE = "unstable"
    # Any value GitHub may add later; never compared as a raw string.
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, raw: str | None) -> MergeableState:
        if raw is None:
            return cls.UNKNOWN
        normalized = raw.strip().lower()
        for member in cls:
            if member is not cls.UNRECOGNIZED and member.value == normalized:
                return member
        return cls.UNRECOGNIZED


@dataclass(frozen=True)
class PullRequest:
    number: int
    title: str
    merged: bool
    state: PullRequestState
    author_login: str | None
    author_association: str | None
    base_ref: str
    head_sha: str
    mergeable_state: MergeableState
    labels: tuple[str, ...]


@dataclass(frozen=True)
class Review:
    review_id: int
    author_login: str | None
    author_association: str | None
    state: str
    submitted_at: str | None
    commit_id: str | None


@dataclass(frozen=True)
class RequiredStatusChecks:
    contexts: tuple[str, ...]
    source: StatusCheckSource

    @property
    def count(self) -> int:
        return len(self.contexts)


@dataclass(frozen=True)
class MergeCapabilities:
    allow_merge_commit: bool
    allow_squash_merge: bool
    allow_rebase_merge: bool

    def allows(self, method: MergeMethod) -> bool:
        if method == "merge":
            return self.allow_merge_commit
        if method == "squash":
            return self.allow_squash_merge
        return self.allow_rebase_merge


@dataclass(frozen=True)
class RetryTask:
    number: int
    tries: int = 0
