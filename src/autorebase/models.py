from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, TypeAlias


# See https://docs.github.com/en/graphql/reference/enums#mergestatestatus
MergeableState = Literal[
    "behind",
    "blocked",
    "clean",
    "dirty",
    "draft",
    "has_hooks",
    "unknown",
    "unstable",
]
MERGEABLE_STATES: frozenset[str] = frozenset(
    {"behind", "blocked", "clean", "dirty", "draft", "has_hooks", "unknown", "unstable"}
)
ActionType = Literal["merge", "rebase", "abort", "deny-one-time-rebase", "failed", "nop"]
CherryPickMode = Literal["pick", "fixup", "squash"]


@dataclass(frozen=True)
class GitIdentity:
    name: str
    email: str
    date: str | None


@dataclass(frozen=True)
class GitCommit:
    sha: str
    tree_sha: str
    parent_shas: tuple[str, ...]
    message: str
    author: GitIdentity | None
    committer: GitIdentity | None


@dataclass(frozen=True)
class CommitSummary:
    sha: str
    message: str

    @property
    def subject(self) -> str:
        return self.message.split("\n", 1)[0].strip()


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    base_ref: str
    head_ref: str
    head_sha: str
    mergeable_state: MergeableState
    merged: bool
    closed_at: str | None
    labels: tuple[str, ...]
    rebaseable: bool

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None


@dataclass(frozen=True)
class PullRequestInfo:
    number: int
    base_ref: str
    head_ref: str
    head_sha: str
    mergeable_state: MergeableState
    merged: bool
    labeled_and_open_and_rebaseable: bool

    @classmethod
    def from_snapshot(cls, snapshot: PullRequestSnapshot, *, label: str) -> PullRequestInfo:
        return cls(
            number=snapshot.number,
            base_ref=snapshot.base_ref,
            head_ref=snapshot.head_ref,
            head_sha=snapshot.head_sha,
            mergeable_state=snapshot.mergeable_state,
            merged=snapshot.merged,
            labeled_and_open_and_rebaseable=(
                label in snapshot.labels and not snapshot.is_closed and snapshot.rebaseable
            ),
        )


@dataclass(frozen=True)
class PullRequestEvent:
    action: str
    pull_request: PullRequestSnapshot
    label_name: str | None = None


@dataclass(frozen=True)
class PullRequestReviewEvent:
    action: str
    pull_request: PullRequestSnapshot


@dataclass(frozen=True)
class StatusEvent:
    sha: str


@dataclass(frozen=True)
class CheckRunEvent:
    action: str
    head_sha: str


@dataclass(frozen=True)
class IssueCommentEvent:
    action: str
    issue_number: int
    is_pull_request: bool
    body: str
    author_login: str


Event: TypeAlias = (
    PullRequestEvent | PullRequestReviewEvent | StatusEvent | CheckRunEvent | IssueCommentEvent
)


@dataclass(frozen=True)
class MergeAction:
    pr_number: int

    @property
    def type(self) -> ActionType:
        return "merge"


@dataclass(frozen=True)
class RebaseAction:
    pr_number: int

    @property
    def type(self) -> ActionType:
        return "rebase"


@dataclass(frozen=True)
class AbortAction:
    """Another run holds the label lock on this pull request."""

    pr_number: int

    @property
    def type(self) -> ActionType:
        return "abort"


@dataclass(frozen=True)
class DenyOneTimeRebaseAction:
    pr_number: int
    author_login: str

    @property
    def type(self) -> ActionType:
        return "deny-one-time-rebase"


@dataclass(frozen=True)
class FailedAction:
    error: Exception

    @property
    def type(self) -> ActionType:
        return "failed"


@dataclass(frozen=True)
class NopAction:
    @property
    def type(self) -> ActionType:
        return "nop"


Action: TypeAlias = (
    MergeAction
    | RebaseAction
    | AbortAction
    | DenyOneTimeRebaseAction
    | FailedAction
    | NopAction
)


def action_to_dict(action: Action) -> dict[str, object]:
    payload: dict[str, object] = {"type": action.type}
    if isinstance(action, MergeAction | RebaseAction | AbortAction):
        payload["pr_number"] = action.pr_number
    elif isinstance(action, DenyOneTimeRebaseAction):
        payload["pr_number"] = action.pr_number
        payload["author_login"] = action.author_login
    elif isinstance(action, FailedAction):
        payload["error_type"] = type(action.error).__name__
        payload["error"] = str(action.error)
    return payload
