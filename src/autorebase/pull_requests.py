from __future__ import annotations

from collections.abc import Callable
import logging
import time

from autorebase.errors import MergeableStateTimeoutError
from autorebase.github_gateway import GitHubGateway
from autorebase.models import PullRequestInfo, PullRequestSnapshot
from autorebase.observability import RunLog


LOGGER = logging.getLogger("autorebase.pull_requests")
MIN_POLL_INTERVAL_SECONDS = 0.5

Resolver = Callable[[int], PullRequestSnapshot]
Predicate = Callable[[PullRequestInfo], bool]


def is_mergeable_state_known(snapshot: PullRequestSnapshot) -> bool:
    return snapshot.is_closed or snapshot.mergeable_state != "unknown"


def wait_for_known_mergeable_state(
    github: GitHubGateway,
    *,
    pr_number: int,
    log: RunLog,
    poll_interval_seconds: float = MIN_POLL_INTERVAL_SECONDS,
    max_attempts: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PullRequestSnapshot:
    """Fetch the pull request until GitHub has computed its mergeable state.

    Always fetches at least once: a state carried by a webhook payload can be a stale
    `clean` right after a push. max_attempts=None polls forever.
    """
    interval = max(poll_interval_seconds, MIN_POLL_INTERVAL_SECONDS)
    attempt = 0
    while True:
        attempt += 1
        snapshot = github.get_pull_request(pr_number)
        if is_mergeable_state_known(snapshot):
            log.event(
                LOGGER,
                "mergeable_state_resolved",
                pr_number=pr_number,
                mergeable_state=snapshot.mergeable_state,
                closed=snapshot.is_closed,
                attempts=attempt,
            )
            return snapshot
        if max_attempts is not None and attempt >= max_attempts:
            log.warning(LOGGER, "mergeable_state_timeout", pr_number=pr_number, attempts=attempt)
            raise MergeableStateTimeoutError(pr_number=pr_number, attempts=attempt)
        log.event(LOGGER, "mergeable_state_unknown", pr_number=pr_number, attempt=attempt)
        sleep(interval)


def build_search_query(*, owner: str, name: str, label: str, extra_qualifiers: str = "") -> str:
    query = f'is:pr is:open label:"{label}" repo:{owner}/{name}'
    qualifiers = extra_qualifiers.strip()
    return f"{query} {qualifiers}" if qualifiers else query


def find_oldest_pull_request(
    github: GitHubGateway,
    *,
    label: str,
    predicate: Predicate,
    resolver: Resolver,
    log: RunLog,
    extra_qualifiers: str = "",
) -> PullRequestInfo | None:
    """Return the oldest open labeled pull request matching predicate.

    Candidates are checked one at a time in creation order and the scan stops at the
    first match; later candidates and result pages are never fetched.
    """
    query = build_search_query(
        owner=github.owner, name=github.name, label=label, extra_qualifiers=extra_qualifiers
    )
    log.event(LOGGER, "search_started", query=query)
    for pr_number in github.iter_search_issue_numbers(query):
        info = PullRequestInfo.from_snapshot(resolver(pr_number), label=label)
        matched = predicate(info)
        log.event(
            LOGGER,
            "search_candidate",
            pr_number=pr_number,
            mergeable_state=info.mergeable_state,
            matched=matched,
        )
        if matched:
            return info
    log.event(LOGGER, "search_exhausted", query=query)
    return None


def find_autorebaseable_pull_request_matching_sha(
    github: GitHubGateway,
    *,
    label: str,
    sha: str,
    resolver: Resolver,
    log: RunLog,
) -> PullRequestInfo | None:
    return find_oldest_pull_request(
        github,
        label=label,
        predicate=lambda info: info.labeled_and_open_and_rebaseable and info.head_sha == sha,
        resolver=resolver,
        log=log,
        extra_qualifiers=sha,
    )
