from __future__ import annotations

from collections.abc import Callable
import logging
import time

from autorebase.cherry_pick import Intercept
from autorebase.config import (
    DEFAULT_AUTHORIZED_PERMISSIONS,
    DEFAULT_LABEL,
    AppConfig,
    RuntimeConfig,
)
from autorebase.errors import MergeableStateTimeoutError, RebaseError, RebaseFailedError
from autorebase.github_gateway import GitHubApiError, GitHubGateway
from autorebase.label_lock import label_lock
from autorebase.models import (
    AbortAction,
    Action,
    CheckRunEvent,
    DenyOneTimeRebaseAction,
    Event,
    FailedAction,
    IssueCommentEvent,
    MergeAction,
    NopAction,
    PullRequestEvent,
    PullRequestInfo,
    PullRequestReviewEvent,
    PullRequestSnapshot,
    RebaseAction,
    StatusEvent,
)
from autorebase.observability import RunLog
from autorebase.pull_requests import (
    find_autorebaseable_pull_request_matching_sha,
    find_oldest_pull_request,
    wait_for_known_mergeable_state,
)
from autorebase.rebase import needs_autosquash, rebase_pull_request


LOGGER = logging.getLogger("autorebase.autorebase")
_ONE_TIME_REBASE_COMMAND = "/rebase"
_NOT_A_COLLABORATOR_STATUS = 404
_HEAD_MOVED_STATUS = 409

AuthorizationPredicate = Callable[[str], bool]


class Autorebase:
    """Decide and carry out the single action one webhook event calls for."""

    def __init__(
        self,
        github: GitHubGateway,
        *,
        label: str = DEFAULT_LABEL,
        runtime: RuntimeConfig | None = None,
        is_authorized: AuthorizationPredicate | None = None,
        sleep: Callable[[float], None] = time.sleep,
        intercept: Intercept | None = None,
    ) -> None:
        self._github = github
        self._label = label
        self._runtime = runtime or RuntimeConfig()
        self._is_authorized = is_authorized or _permission_in(DEFAULT_AUTHORIZED_PERMISSIONS)
        self._sleep = sleep
        # Test hook: called with the head SHA after a rebase is decided, before the lock.
        self._intercept = intercept

    @classmethod
    def from_config(cls, config: AppConfig, *, github: GitHubGateway | None = None) -> Autorebase:
        return cls(
            github or GitHubGateway(owner=config.repo.owner, name=config.repo.name),
            label=config.repo.label,
            runtime=config.runtime,
            is_authorized=config.repo.authorizes,
        )

    def run(self, event: Event, *, force_rebase: bool = False) -> Action:
        log = RunLog.start(repo=self._github.full_name, event_name=_event_name(event))
        log.event(LOGGER, "run_started", label=self._label, force_rebase=force_rebase)
        action = self._decide(event, force_rebase=force_rebase, log=log)
        log.event(
            LOGGER,
            "action_decided",
            action=action.type,
            pr_number=getattr(action, "pr_number", None),
        )
        return action

    def rebase(self, pr_number: int) -> AbortAction | RebaseAction:
        """Rebase one pull request now, under the label lock when it carries the label."""
        log = RunLog.start(repo=self._github.full_name, event_name="manual_rebase")
        snapshot = self._github.get_pull_request(pr_number)
        return self._rebase_snapshot(snapshot, log=log)

    def _decide(self, event: Event, *, force_rebase: bool, log: RunLog) -> Action:
        if isinstance(event, StatusEvent):
            return self._handle_sha(event.sha, log=log)
        if isinstance(event, CheckRunEvent):
            if event.action != "completed":
                return NopAction()
            return self._handle_sha(event.head_sha, log=log)
        if isinstance(event, IssueCommentEvent):
            return self._handle_issue_comment(event, log=log)
        if isinstance(event, PullRequestEvent):
            return self._handle_pull_request(event, force_rebase=force_rebase, log=log)
        if isinstance(event, PullRequestReviewEvent):
            if event.action != "submitted":
                return NopAction()
            info = self._info(self._resolve(event.pull_request.number, log=log))
            if info.labeled_and_open_and_rebaseable and info.mergeable_state == "clean":
                return self._merge(info, log=log)
        return NopAction()

    def _handle_sha(self, sha: str, *, log: RunLog) -> Action:
        if self._runtime.search_delay_seconds > 0:
            self._sleep(self._runtime.search_delay_seconds)
        info = find_autorebaseable_pull_request_matching_sha(
            self._github,
            label=self._label,
            sha=sha,
            resolver=lambda pr_number: self._resolve(pr_number, log=log),
            log=log,
        )
        if info is None:
            return NopAction()
        if info.mergeable_state == "clean":
            return self._merge(info, log=log)
        if info.mergeable_state == "blocked":
            # The rebase made this one unmergeable; move on to another pull request
            # on the same base until someone unblocks it.
            log.event(LOGGER, "pull_request_blocked", pr_number=info.number, base=info.base_ref)
            return self._rebase_behind_on_base(info.base_ref, log=log)
        return NopAction()

    def _handle_issue_comment(self, event: IssueCommentEvent, *, log: RunLog) -> Action:
        commands = {f"/{self._label}", _ONE_TIME_REBASE_COMMAND}
        if (
            event.action != "created"
            or not event.is_pull_request
            or event.body.strip() not in commands
        ):
            return NopAction()

        permission = self._collaborator_permission(event.author_login)
        if not self._is_authorized(permission):
            log.warning(
                LOGGER,
                "one_time_rebase_denied",
                pr_number=event.issue_number,
                login=event.author_login,
                permission=permission,
            )
            self._github.post_issue_comment(
                event.issue_number,
                f"@{event.author_login} is not allowed to request a one-time rebase: "
                f"this requires write access to {self._github.full_name} "
                f"(current permission: {permission}).",
            )
            return DenyOneTimeRebaseAction(
                pr_number=event.issue_number, author_login=event.author_login
            )

        snapshot = self._github.get_pull_request(event.issue_number)
        if snapshot.is_closed:
            log.event(LOGGER, "one_time_rebase_skipped", pr_number=snapshot.number, reason="closed")
            return NopAction()
        return self._rebase_snapshot(snapshot, log=log)

    def _handle_pull_request(
        self, event: PullRequestEvent, *, force_rebase: bool, log: RunLog
    ) -> Action:
        pr_number = event.pull_request.number
        triggering = event.action in {"opened", "synchronize"} or (
            event.action == "labeled" and event.label_name == self._label
        )
        if triggering:
            snapshot = self._resolve(pr_number, log=log)
            info = self._info(snapshot)
            if info.labeled_and_open_and_rebaseable:
                return self._autorebase_pull_request(info, labeled=True, log=log)
            if force_rebase and not snapshot.is_closed:
                return self._autorebase_pull_request(
                    info, labeled=self._label in snapshot.labels, log=log
                )
            return NopAction()
        if event.action == "closed":
            info = self._info(self._resolve(pr_number, log=log))
            if info.merged:
                return self._rebase_behind_on_base(info.base_ref, log=log)
        return NopAction()

    def _autorebase_pull_request(
        self, info: PullRequestInfo, *, labeled: bool, log: RunLog
    ) -> Action:
        commits = self._github.list_pull_request_commits(info.number)
        autosquash = needs_autosquash(commits)
        log.event(
            LOGGER,
            "pull_request_policy",
            pr_number=info.number,
            mergeable_state=info.mergeable_state,
            needs_autosquash=autosquash,
        )
        if autosquash or info.mergeable_state == "behind":
            return self._rebase(info, locked=labeled, log=log)
        if info.mergeable_state == "clean":
            return self._merge(info, log=log)
        return NopAction()

    def _rebase_behind_on_base(self, base_ref: str, *, log: RunLog) -> Action:
        info = find_oldest_pull_request(
            self._github,
            label=self._label,
            predicate=lambda candidate: candidate.mergeable_state == "behind",
            resolver=lambda pr_number: self._resolve(pr_number, log=log),
            log=log,
            extra_qualifiers=f"base:{base_ref}",
        )
        if info is None:
            return NopAction()
        return self._rebase(info, locked=True, log=log)

    def _merge(self, info: PullRequestInfo, *, log: RunLog) -> MergeAction | NopAction:
        try:
            self._github.merge_pull_request(
                info.number, merge_method="rebase", sha=info.head_sha
            )
        except GitHubApiError as exc:
            if exc.status_code != _HEAD_MOVED_STATUS:
                raise
            # The push that moved the head triggers its own events.
            log.event(LOGGER, "merge_head_moved", pr_number=info.number, sha=info.head_sha)
            return NopAction()
        self._github.delete_reference(info.head_ref)
        log.event(LOGGER, "pull_request_merged", pr_number=info.number, head_ref=info.head_ref)
        return MergeAction(pr_number=info.number)

    def _rebase_snapshot(
        self, snapshot: PullRequestSnapshot, *, log: RunLog
    ) -> AbortAction | RebaseAction:
        return self._rebase(
            self._info(snapshot), locked=self._label in snapshot.labels, log=log
        )

    def _rebase(
        self, info: PullRequestInfo, *, locked: bool, log: RunLog
    ) -> AbortAction | RebaseAction:
        if self._intercept is not None:
            self._intercept(info.head_sha)
        if not locked:
            return self._run_rebase_engine(info, log=log)
        with label_lock(
            self._github, pr_number=info.number, label=self._label, log=log
        ) as acquired:
            if not acquired:
                log.event(LOGGER, "rebase_lock_held", pr_number=info.number)
                return AbortAction(pr_number=info.number)
            return self._run_rebase_engine(info, log=log)

    def _run_rebase_engine(self, info: PullRequestInfo, *, log: RunLog) -> RebaseAction:
        try:
            new_sha = rebase_pull_request(self._github, pr_number=info.number, log=log)
        except (RebaseError, GitHubApiError) as exc:
            log.warning(
                LOGGER,
                "rebase_failed",
                pr_number=info.number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._github.post_issue_comment(info.number, _rebase_failed_comment(info, exc))
            raise RebaseFailedError(pr_number=info.number) from exc
        log.event(LOGGER, "pull_request_rebased", pr_number=info.number, sha=new_sha)
        return RebaseAction(pr_number=info.number)

    def _resolve(self, pr_number: int, *, log: RunLog) -> PullRequestSnapshot:
        return wait_for_known_mergeable_state(
            self._github,
            pr_number=pr_number,
            log=log,
            poll_interval_seconds=self._runtime.mergeable_state_poll_seconds,
            max_attempts=self._runtime.mergeable_state_attempt_limit,
            sleep=self._sleep,
        )

    def _info(self, snapshot: PullRequestSnapshot) -> PullRequestInfo:
        return PullRequestInfo.from_snapshot(snapshot, label=self._label)

    def _collaborator_permission(self, login: str) -> str:
        try:
            return self._github.get_collaborator_permission(login)
        except GitHubApiError as exc:
            if exc.status_code != _NOT_A_COLLABORATOR_STATUS:
                raise
            return "none"


def run(
    event: Event,
    *,
    github: GitHubGateway,
    label: str = DEFAULT_LABEL,
    is_authorized: AuthorizationPredicate | None = None,
    runtime: RuntimeConfig | None = None,
    sleep: Callable[[float], None] = time.sleep,
    intercept: Intercept | None = None,
    force_rebase: bool = False,
) -> Action:
    """Handle one event; raises RebaseFailedError after commenting on a failed rebase."""
    autorebase = Autorebase(
        github,
        label=label,
        runtime=runtime,
        is_authorized=is_authorized,
        sleep=sleep,
        intercept=intercept,
    )
    return autorebase.run(event, force_rebase=force_rebase)


def handle_event(
    event: Event,
    *,
    github: GitHubGateway,
    label: str = DEFAULT_LABEL,
    is_authorized: AuthorizationPredicate | None = None,
    runtime: RuntimeConfig | None = None,
    sleep: Callable[[float], None] = time.sleep,
    intercept: Intercept | None = None,
    force_rebase: bool = False,
) -> Action:
    """Like run, but reports failed rebases and mergeable-state timeouts as FailedAction."""
    try:
        return run(
            event,
            github=github,
            label=label,
            is_authorized=is_authorized,
            runtime=runtime,
            sleep=sleep,
            intercept=intercept,
            force_rebase=force_rebase,
        )
    except (RebaseFailedError, MergeableStateTimeoutError) as exc:
        log_failed_run(github, _event_name(event), exc)
        return FailedAction(error=exc)


def log_failed_run(github: GitHubGateway, event_name: str, exc: Exception) -> None:
    RunLog.start(repo=github.full_name, event_name=event_name).event(
        LOGGER,
        "run_failed",
        level=logging.ERROR,
        error_type=type(exc).__name__,
        error=str(exc),
    )


def _permission_in(permissions: frozenset[str]) -> AuthorizationPredicate:
    return lambda permission: permission.strip().lower() in permissions


def _event_name(event: Event) -> str:
    if isinstance(event, StatusEvent):
        return "status"
    if isinstance(event, CheckRunEvent):
        return "check_run"
    if isinstance(event, IssueCommentEvent):
        return "issue_comment"
    if isinstance(event, PullRequestReviewEvent):
        return "pull_request_review"
    return "pull_request"


def _rebase_failed_comment(info: PullRequestInfo, exc: Exception) -> str:
    return "\n".join(
        [
            "The rebase failed:",
            "",
            "```",
            str(exc),
            "```",
            "",
            "To rebase manually and resolve any conflicts locally:",
            "",
            "```sh",
            "git fetch origin",
            f"git checkout {info.head_ref}",
            f"git rebase --autosquash origin/{info.base_ref}",
            f"git push --force-with-lease origin {info.head_ref}",
            "```",
        ]
    )
