from __future__ import annotations


class RebaseError(RuntimeError):
    """Base class for failures that leave the rewritten branch untouched."""


class CherryPickConflictError(RebaseError):
    def __init__(self, *, commit_sha: str, ref: str) -> None:
        super().__init__(f"Commit {commit_sha} could not be cherry-picked on top of {ref}")
        self.commit_sha = commit_sha
        self.ref = ref


class ReferenceChangedError(RebaseError):
    def __init__(self, *, ref: str, expected_sha: str) -> None:
        super().__init__(
            f"Update of {ref} aborted because it was not a fast-forward; "
            f"the branch moved since it was read at {expected_sha}."
        )
        self.ref = ref
        self.expected_sha = expected_sha


class HeadBranchChangedError(RebaseError):
    def __init__(self, *, ref: str, expected_sha: str, actual_sha: str) -> None:
        super().__init__(
            "Rebase aborted because the head branch changed.\n"
            f"The current SHA of {ref} is {actual_sha} "
            f"but it was expected to still be {expected_sha}."
        )
        self.ref = ref
        self.expected_sha = expected_sha
        self.actual_sha = actual_sha


class RebaseFailedError(RuntimeError):
    """Raised by the decision engine after reporting a failed rebase on the pull request."""

    def __init__(self, *, pr_number: int) -> None:
        super().__init__(f"rebase failed for pull request #{pr_number}")
        self.pr_number = pr_number


class MergeableStateTimeoutError(RuntimeError):
    def __init__(self, *, pr_number: int, attempts: int) -> None:
        super().__init__(
            f"Gave up waiting for a known mergeable state on pull request #{pr_number} "
            f"after {attempts} attempts"
        )
        self.pr_number = pr_number
        self.attempts = attempts
