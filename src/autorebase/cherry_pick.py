from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
import logging

from autorebase.errors import CherryPickConflictError
from autorebase.git_refs import fast_forward_reference, temporary_reference
from autorebase.github_gateway import GitHubApiError, GitHubGateway
from autorebase.models import CherryPickMode, GitCommit
from autorebase.observability import RunLog


LOGGER = logging.getLogger("autorebase.cherry_pick")
_MERGE_CONFLICT_STATUS = 409

Intercept = Callable[[str], None]


@dataclass(frozen=True)
class CherryPickStep:
    sha: str
    mode: CherryPickMode = "pick"


def cherry_pick_commits(
    github: GitHubGateway,
    *,
    commits: Sequence[str],
    ref: str,
    log: RunLog,
    base_sha: str | None = None,
    intercept: Intercept | None = None,
) -> str:
    return cherry_pick_steps(
        github,
        steps=tuple(CherryPickStep(sha=sha) for sha in commits),
        ref=ref,
        log=log,
        base_sha=base_sha,
        intercept=intercept,
    )


def cherry_pick_steps(
    github: GitHubGateway,
    *,
    steps: Sequence[CherryPickStep],
    ref: str,
    log: RunLog,
    base_sha: str | None = None,
    intercept: Intercept | None = None,
) -> str:
    """Apply steps on top of base_sha (default: ref's tip) and fast-forward ref to the result.

    The intermediate commits live on a temporary branch, so ref is either moved to the
    final tip or left exactly where it was.
    """
    initial_sha = base_sha if base_sha is not None else github.get_reference_sha(ref)
    log.event(LOGGER, "cherry_pick_started", ref=ref, sha=initial_sha, step_count=len(steps))
    if intercept is not None:
        intercept(initial_sha)
    if not steps:
        return initial_sha

    with temporary_reference(
        github, prefix=f"cherry-pick-{ref}", sha=initial_sha, log=log
    ) as temporary_ref:
        tip = github.get_commit(initial_sha)
        picked_any = False
        for step in steps:
            mode = step.mode if picked_any else "pick"
            tip = _apply_step(
                github,
                commit_sha=step.sha,
                mode=mode,
                tip=tip,
                temporary_ref=temporary_ref,
                target_ref=ref,
                log=log,
            )
            picked_any = True
        fast_forward_reference(github, ref=ref, sha=tip.sha, expected_sha=initial_sha, log=log)
    log.event(LOGGER, "cherry_pick_ref_updated", ref=ref, sha=tip.sha)
    return tip.sha


def _apply_step(
    github: GitHubGateway,
    *,
    commit_sha: str,
    mode: CherryPickMode,
    tip: GitCommit,
    temporary_ref: str,
    target_ref: str,
    log: RunLog,
) -> GitCommit:
    commit = github.get_commit(commit_sha)
    log.event(LOGGER, "cherry_pick_commit", commit=commit_sha, mode=mode, onto=tip.sha)

    # Park the temporary branch on a commit with tip's tree but commit's parent,
    # so the host's merge uses that parent as merge base.
    sibling = github.create_commit(
        message=f"Sibling of {commit.sha}",
        tree_sha=tip.tree_sha,
        parent_shas=commit.parent_shas[:1],
    )
    github.update_reference(temporary_ref, sibling.sha, force=True)
    try:
        merged_tree_sha = github.merge(
            base=temporary_ref,
            head=commit.sha,
            commit_message=f"Merge {commit.sha} into {temporary_ref}",
        )
    except GitHubApiError as exc:
        if exc.status_code != _MERGE_CONFLICT_STATUS:
            raise
        log.warning(LOGGER, "cherry_pick_conflict", commit=commit.sha, ref=target_ref)
        raise CherryPickConflictError(commit_sha=commit.sha, ref=target_ref) from exc
    tree_sha = merged_tree_sha if merged_tree_sha is not None else tip.tree_sha

    if mode == "pick":
        created = github.create_commit(
            message=commit.message,
            tree_sha=tree_sha,
            parent_shas=(tip.sha,),
            author=commit.author,
            committer=commit.committer,
        )
    else:
        message = tip.message if mode == "fixup" else f"{tip.message}\n\n{commit.message}"
        created = github.create_commit(
            message=message,
            tree_sha=tree_sha,
            parent_shas=tip.parent_shas,
            author=tip.author,
            committer=tip.committer,
        )
    github.update_reference(temporary_ref, created.sha, force=True)
    return created
