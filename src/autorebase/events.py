from __future__ import annotations

from collections.abc import Mapping
from typing import cast

from autorebase.github_gateway import parse_pull_request_payload
from autorebase.models import (
    CheckRunEvent,
    Event,
    IssueCommentEvent,
    PullRequestEvent,
    PullRequestReviewEvent,
    StatusEvent,
)


SUPPORTED_EVENT_NAMES: frozenset[str] = frozenset(
    {"check_run", "issue_comment", "pull_request", "pull_request_review", "status"}
)


def parse_event(name: str, payload: Mapping[str, object]) -> Event | None:
    """Translate a webhook delivery into an Event, or None for deliveries we never act on."""
    if name == "status":
        sha = payload.get("sha")
        return StatusEvent(sha=sha) if isinstance(sha, str) and sha else None

    action = payload.get("action")
    if not isinstance(action, str):
        return None

    if name == "check_run":
        check_run = _object(payload.get("check_run"))
        head_sha = check_run.get("head_sha") if check_run else None
        if not isinstance(head_sha, str) or not head_sha:
            return None
        return CheckRunEvent(action=action, head_sha=head_sha)

    if name == "issue_comment":
        issue = _object(payload.get("issue"))
        comment = _object(payload.get("comment"))
        if issue is None or comment is None:
            return None
        number = issue.get("number")
        if isinstance(number, bool) or not isinstance(number, int):
            return None
        user = _object(comment.get("user")) or {}
        body = comment.get("body")
        login = user.get("login")
        return IssueCommentEvent(
            action=action,
            issue_number=number,
            is_pull_request=issue.get("pull_request") is not None,
            body=body if isinstance(body, str) else "",
            author_login=login if isinstance(login, str) else "",
        )

    if name in {"pull_request", "pull_request_review"}:
        pull_request = _object(payload.get("pull_request"))
        if pull_request is None:
            return None
        snapshot = parse_pull_request_payload(pull_request)
        if name == "pull_request_review":
            return PullRequestReviewEvent(action=action, pull_request=snapshot)
        label = _object(payload.get("label")) or {}
        label_name = label.get("name")
        return PullRequestEvent(
            action=action,
            pull_request=snapshot,
            label_name=label_name if isinstance(label_name, str) else None,
        )

    return None


def _object(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    return cast(dict[str, object], value)
