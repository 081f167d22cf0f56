from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
import logging
import uuid

from autorebase.errors import ReferenceChangedError
from autorebase.github_gateway import GitHubApiError, GitHubGateway
from autorebase.observability import RunLog


LOGGER = logging.getLogger("autorebase.git_refs")
_NOT_FAST_FORWARD_STATUS = 422


def generate_unique_ref(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4()}"


@contextmanager
def temporary_reference(
    github: GitHubGateway, *, prefix: str, sha: str, log: RunLog
) -> Iterator[str]:
    """Create a uniquely named branch at sha and delete it on exit, success or not."""
    ref = generate_unique_ref(prefix)
    github.create_reference(ref, sha)
    log.event(LOGGER, "temporary_ref_created", ref=ref, sha=sha)
    try:
        yield ref
    finally:
        github.delete_reference(ref)
        log.event(LOGGER, "temporary_ref_deleted", ref=ref)


def fast_forward_reference(
    github: GitHubGateway, *, ref: str, sha: str, expected_sha: str, log: RunLog
) -> None:
    try:
        github.update_reference(ref, sha, force=False)
    except GitHubApiError as exc:
        if exc.status_code != _NOT_FAST_FORWARD_STATUS:
            raise
        log.warning(LOGGER, "reference_update_rejected", ref=ref, sha=sha, expected=expected_sha)
        raise ReferenceChangedError(ref=ref, expected_sha=expected_sha) from exc
