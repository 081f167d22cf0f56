from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
import logging

from autorebase.github_gateway import GitHubApiError, GitHubGateway
from autorebase.observability import RunLog


LOGGER = logging.getLogger("autorebase.label_lock")
_LABEL_MISSING_STATUS = 404


@contextmanager
def label_lock(
    github: GitHubGateway, *, pr_number: int, label: str, log: RunLog
) -> Iterator[bool]:
    """Hold the pull request's label as a mutex for the duration of the block.

    Removing the label acquires the lock and re-adding it releases it. Yields False,
    releasing nothing, when the label was already gone. The host's removal is not a
    compare-and-swap: two removals landing close together can both succeed.
    """
    log.event(LOGGER, "lock_acquiring", pr_number=pr_number, label=label)
    try:
        github.remove_label(pr_number, label)
    except GitHubApiError as exc:
        if exc.status_code != _LABEL_MISSING_STATUS:
            raise
        acquired = False
    else:
        acquired = True

    if not acquired:
        log.event(LOGGER, "lock_already_held", pr_number=pr_number, label=label)
        yield False
        return

    log.event(LOGGER, "lock_acquired", pr_number=pr_number, label=label)
    pending: BaseException | None = None
    try:
        yield True
    except BaseException as exc:
        pending = exc
        raise
    finally:
        _release(github, pr_number=pr_number, label=label, log=log, pending=pending)


def _release(
    github: GitHubGateway,
    *,
    pr_number: int,
    label: str,
    log: RunLog,
    pending: BaseException | None,
) -> None:
    try:
        github.add_labels(pr_number, (label,))
    except Exception as exc:  # noqa: BLE001
        log.warning(
            LOGGER,
            "lock_release_failed",
            pr_number=pr_number,
            label=label,
            error_type=type(exc).__name__,
            error=str(exc),
            pending_error_type=type(pending).__name__ if pending is not None else None,
            pending_error=str(pending) if pending is not None else None,
        )
        raise
    log.event(LOGGER, "lock_released", pr_number=pr_number, label=label)
