from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
import logging

from autorebase.cherry_pick import CherryPickStep, Intercept, cherry_pick_steps
from autorebase.errors import HeadBranchChangedError
from autorebase.git_refs import temporary_reference
from autorebase.github_gateway import GitHubGateway
from autorebase.models import CherryPickMode, CommitSummary
from autorebase.observability import RunLog


LOGGER = logging.getLogger("autorebase.rebase")
_AUTOSQUASH_PREFIXES: tuple[tuple[str, CherryPickMode], ...] = (
    ("fixup! ", "fixup"),
    ("squash! ", "squash"),
)


@dataclass
class _Anchor:
    commit: CommitSummary
    followers: list[CherryPickStep] = field(default_factory=list)


def parse_autosquash_subject(subject: str) -> tuple[CherryPickMode, str] | None:
    """Return (mode, target subject prefix) for a fixup!/squash! subject, else None."""
    mode: CherryPickMode | None = None
    remainder = subject
    while True:
        for prefix, prefix_mode in _AUTOSQUASH_PREFIXES:
            if remainder.startswith(prefix):
                mode = mode or prefix_mode
                remainder = remainder[len(prefix) :]
                break
        else:
            break
    target = remainder.strip()
    if mode is None or not target:
        return None
    return mode, target


def plan_autosquash(commits: Sequence[CommitSummary]) -> tuple[CherryPickStep, ...]:
    """Order commits the way `git rebase --autosquash` would.

    Each fixup!/squash! commit moves right after the earliest earlier commit whose
    subject starts with its target; unresolvable ones stay where they are as picks.
    """
    anchors: list[_Anchor] = []
    for commit in commits:
        parsed = parse_autosquash_subject(commit.subject)
        if parsed is not None:
            mode, target = parsed
            anchor = next(
                (item for item in anchors if item.commit.subject.startswith(target)),
                None,
            )
            if anchor is not None:
                anchor.followers.append(CherryPickStep(sha=commit.sha, mode=mode))
                continue
        anchors.append(_Anchor(commit=commit))

    steps: list[CherryPickStep] = []
    for anchor in anchors:
        steps.append(CherryPickStep(sha=anchor.commit.sha))
        steps.extend(anchor.followers)
    return tuple(steps)


def needs_autosquash(commits: Sequence[CommitSummary]) -> bool:
    return any(step.mode != "pick" for step in plan_autosquash(commits))


def rebase_pull_request(
    github: GitHubGateway,
    *,
    pr_number: int,
    log: RunLog,
    intercept: Intercept | None = None,
    autosquash: bool = True,
) -> str:
    pull_request = github.get_pull_request(pr_number)
    # The base SHA embedded in pull request responses can lag; read the ref itself.
    base_sha = github.get_reference_sha(pull_request.base_ref)
    head_initial_sha = github.get_reference_sha(pull_request.head_ref)
    commits = github.list_pull_request_commits(pr_number)
    if autosquash:
        steps = plan_autosquash(commits)
    else:
        steps = tuple(CherryPickStep(sha=commit.sha) for commit in commits)
    log.event(
        LOGGER,
        "rebase_commits_fetched",
        pr_number=pr_number,
        base_ref=pull_request.base_ref,
        base_sha=base_sha,
        head_ref=pull_request.head_ref,
        head_sha=head_initial_sha,
        commit_count=len(commits),
        step_count=len(steps),
    )
    if intercept is not None:
        intercept(head_initial_sha)

    with temporary_reference(
        github, prefix=f"rebase-pull-request-{pr_number}", sha=base_sha, log=log
    ) as temporary_ref:
        new_sha = cherry_pick_steps(
            github, steps=steps, ref=temporary_ref, base_sha=base_sha, log=log
        )
        # Not atomic with the forced update below: a push landing in between is lost.
        actual_head_sha = github.get_reference_sha(pull_request.head_ref)
        if actual_head_sha != head_initial_sha:
            log.warning(
                LOGGER,
                "rebase_head_changed",
                pr_number=pr_number,
                expected=head_initial_sha,
                actual=actual_head_sha,
            )
            raise HeadBranchChangedError(
                ref=pull_request.head_ref,
                expected_sha=head_initial_sha,
                actual_sha=actual_head_sha,
            )
        github.update_reference(pull_request.head_ref, new_sha, force=True)
    log.event(
        LOGGER,
        "rebase_ref_updated",
        pr_number=pr_number,
        head_ref=pull_request.head_ref,
        sha=new_sha,
    )
    return new_sha
