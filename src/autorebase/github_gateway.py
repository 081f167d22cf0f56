from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
import json
import logging
from typing import cast
from urllib.parse import quote, urlencode

from autorebase.models import (
    MERGEABLE_STATES,
    CommitSummary,
    GitCommit,
    GitIdentity,
    MergeableState,
    PullRequestSnapshot,
)
from autorebase.observability import log_event
from autorebase.shell import run


LOGGER = logging.getLogger("autorebase.github_gateway")
_PER_PAGE = 100


class GitHubApiError(RuntimeError):
    def __init__(self, *, method: str, path: str, status_code: int, message: str) -> None:
        super().__init__(
            f"GitHub API {method} {path} failed with status {status_code}: {message}"
        )
        self.method = method
        self.path = path
        self.status_code = status_code
        self.message = message


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def get_reference_sha(self, ref: str) -> str:
        payload_obj = self._api_object("GET", f"{self._repo_path}/git/ref/heads/{_quote_ref(ref)}")
        object_obj = _as_object_dict(payload_obj.get("object"))
        if object_obj is None:
            raise RuntimeError("Unexpected GitHub response: missing reference object")
        sha = _as_string(object_obj.get("sha"))
        log_event(LOGGER, "github_read", endpoint="reference", ref=ref, sha=sha)
        return sha

    def create_reference(self, ref: str, sha: str) -> None:
        self._api_json(
            "POST",
            f"{self._repo_path}/git/refs",
            payload={"ref": f"refs/heads/{ref}", "sha": sha},
        )
        log_event(LOGGER, "github_reference_created", ref=ref, sha=sha)

    def update_reference(self, ref: str, sha: str, *, force: bool) -> None:
        self._api_json(
            "PATCH",
            f"{self._repo_path}/git/refs/heads/{_quote_ref(ref)}",
            payload={"sha": sha, "force": force},
        )
        log_event(LOGGER, "github_reference_updated", ref=ref, sha=sha, force=force)

    def delete_reference(self, ref: str) -> None:
        self._api_json("DELETE", f"{self._repo_path}/git/refs/heads/{_quote_ref(ref)}")
        log_event(LOGGER, "github_reference_deleted", ref=ref)

    def get_commit(self, sha: str) -> GitCommit:
        payload_obj = self._api_object("GET", f"{self._repo_path}/git/commits/{sha}")
        commit = _parse_git_commit(payload_obj)
        log_event(LOGGER, "github_read", endpoint="git_commit", sha=sha)
        return commit

    def create_commit(
        self,
        *,
        message: str,
        tree_sha: str,
        parent_shas: tuple[str, ...],
        author: GitIdentity | None = None,
        committer: GitIdentity | None = None,
    ) -> GitCommit:
        body: dict[str, object] = {
            "message": message,
            "tree": tree_sha,
            "parents": list(parent_shas),
        }
        # Commits are recreated without their PGP signature.
        if author is not None:
            body["author"] = _identity_payload(author)
        if committer is not None:
            body["committer"] = _identity_payload(committer)
        payload_obj = self._api_object("POST", f"{self._repo_path}/git/commits", payload=body)
        commit = _parse_git_commit(payload_obj)
        log_event(
            LOGGER,
            "github_commit_created",
            sha=commit.sha,
            tree_sha=tree_sha,
            parent_count=len(parent_shas),
        )
        return commit

    def create_blob(self, content: str) -> str:
        payload_obj = self._api_object(
            "POST",
            f"{self._repo_path}/git/blobs",
            payload={"content": content, "encoding": "utf-8"},
        )
        return _as_string(payload_obj.get("sha"))

    def create_tree(self, blobs_by_path: Mapping[str, str], *, base_tree: str | None = None) -> str:
        body: dict[str, object] = {
            "tree": [
                {"path": path, "mode": "100644", "type": "blob", "sha": blob_sha}
                for path, blob_sha in sorted(blobs_by_path.items())
            ]
        }
        if base_tree is not None:
            body["base_tree"] = base_tree
        payload_obj = self._api_object("POST", f"{self._repo_path}/git/trees", payload=body)
        return _as_string(payload_obj.get("sha"))

    def merge(self, *, base: str, head: str, commit_message: str) -> str | None:
        """Merge head into the base branch; return the merge commit's tree, or None if no-op."""
        payload = self._api_json(
            "POST",
            f"{self._repo_path}/merges",
            payload={"base": base, "head": head, "commit_message": commit_message},
        )
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            log_event(LOGGER, "github_merge_noop", base=base, head=head)
            return None
        commit_obj = _as_object_dict(payload_obj.get("commit"))
        tree_obj = _as_object_dict(commit_obj.get("tree")) if commit_obj else None
        if tree_obj is None:
            raise RuntimeError("Unexpected GitHub response: merge commit without tree")
        tree_sha = _as_string(tree_obj.get("sha"))
        log_event(LOGGER, "github_merged", base=base, head=head, tree_sha=tree_sha)
        return tree_sha

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        payload_obj = self._api_object("GET", f"{self._repo_path}/pulls/{pr_number}")
        snapshot = parse_pull_request_payload(payload_obj)
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=snapshot.number,
            mergeable_state=snapshot.mergeable_state,
        )
        return snapshot

    def list_pull_request_commits(self, pr_number: int) -> tuple[CommitSummary, ...]:
        commits: list[CommitSummary] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PER_PAGE, "page": page})
            payload = self._api_json("GET", f"{self._repo_path}/pulls/{pr_number}/commits?{query}")
            if not isinstance(payload, list):
                raise RuntimeError("Unexpected GitHub response: expected list of commits")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                commit_obj = _as_object_dict(item_obj.get("commit"))
                commits.append(
                    CommitSummary(
                        sha=_as_string(item_obj.get("sha")),
                        message=_as_string(commit_obj.get("message") if commit_obj else None),
                    )
                )
            if len(payload) < _PER_PAGE:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_commits",
            pr_number=pr_number,
            count=len(commits),
        )
        return tuple(commits)

    def merge_pull_request(
        self, pr_number: int, *, merge_method: str = "rebase", sha: str | None = None
    ) -> None:
        """Merge the pull request; with sha, GitHub answers 409 if the head moved past it."""
        payload: dict[str, object] = {"merge_method": merge_method}
        if sha is not None:
            payload["sha"] = sha
        try:
            self._api_json("PUT", f"{self._repo_path}/pulls/{pr_number}/merge", payload=payload)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_merge_failed",
                repo_full_name=self.full_name,
                pr_number=pr_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_pr_merged", pr_number=pr_number, merge_method=merge_method)

    def iter_search_issue_numbers(self, query: str) -> Iterator[int]:
        """Yield issue numbers oldest first, fetching each result page only when reached."""
        page = 1
        while True:
            params = urlencode(
                {
                    "q": query,
                    "sort": "created",
                    "order": "asc",
                    "per_page": _PER_PAGE,
                    "page": page,
                }
            )
            payload_obj = self._api_object("GET", f"/search/issues?{params}")
            items = payload_obj.get("items")
            if not isinstance(items, list):
                raise RuntimeError("Unexpected GitHub response: expected items list for search")
            log_event(
                LOGGER,
                "github_read",
                endpoint="search_issues",
                query=query,
                page=page,
                count=len(items),
            )
            for item in items:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                yield _as_int(item_obj.get("number"), field="number")
            if len(items) < _PER_PAGE:
                return
            page += 1

    def add_labels(self, issue_number: int, labels: tuple[str, ...]) -> None:
        self._api_json(
            "POST",
            f"{self._repo_path}/issues/{issue_number}/labels",
            payload={"labels": list(labels)},
        )
        log_event(LOGGER, "github_labels_added", issue_number=issue_number, labels=labels)

    def remove_label(self, issue_number: int, label: str) -> None:
        self._api_json(
            "DELETE",
            f"{self._repo_path}/issues/{issue_number}/labels/{quote(label, safe='')}",
        )
        log_event(LOGGER, "github_label_removed", issue_number=issue_number, label=label)

    def list_issue_labels(self, issue_number: int) -> tuple[str, ...]:
        query = urlencode({"per_page": _PER_PAGE})
        payload = self._api_json("GET", f"{self._repo_path}/issues/{issue_number}/labels?{query}")
        if not isinstance(payload, list):
            raise RuntimeError("Unexpected GitHub response: expected list of labels")
        return _label_names(payload)

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        path = f"{self._repo_path}/issues/{issue_number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", issue_number=issue_number)

    def get_collaborator_permission(self, login: str) -> str:
        payload_obj = self._api_object(
            "GET",
            f"{self._repo_path}/collaborators/{quote(login, safe='')}/permission",
        )
        permission = _as_string(payload_obj.get("permission")).strip().lower()
        log_event(LOGGER, "github_read", endpoint="collaborator_permission", login=login)
        return permission

    def create_commit_status(self, sha: str, *, state: str, context: str = "default") -> None:
        self._api_json(
            "POST",
            f"{self._repo_path}/statuses/{sha}",
            payload={"state": state, "context": context},
        )

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.name}"

    def _api_object(
        self, method: str, path: str, payload: dict[str, object] | None = None
    ) -> dict[str, object]:
        response = self._api_json(method, path, payload)
        response_obj = _as_object_dict(response)
        if response_obj is None:
            raise RuntimeError(f"Unexpected GitHub response: expected object for {path}")
        return response_obj

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        cmd = ["gh", "api", "--method", method_upper, "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload, check=False)

        status_code, _headers, body = _parse_http_response(raw)
        if status_code < 200 or status_code >= 300:
            message = _error_message(body)
            log_event(
                LOGGER,
                "github_api_failed",
                method=method_upper,
                path=path,
                status_code=status_code,
                error=message,
            )
            raise GitHubApiError(
                method=method_upper, path=path, status_code=status_code, message=message
            )
        if not body.strip():
            return None
        return json.loads(body)


def parse_pull_request_payload(payload_obj: Mapping[str, object]) -> PullRequestSnapshot:
    head = _as_object_dict(payload_obj.get("head"))
    base = _as_object_dict(payload_obj.get("base"))
    if head is None or base is None:
        raise RuntimeError("Unexpected GitHub response: missing pull request head/base")
    labels_obj = payload_obj.get("labels")
    return PullRequestSnapshot(
        number=_as_int(payload_obj.get("number"), field="number"),
        base_ref=_as_string(base.get("ref")),
        head_ref=_as_string(head.get("ref")),
        head_sha=_as_string(head.get("sha")),
        mergeable_state=_as_mergeable_state(payload_obj.get("mergeable_state")),
        merged=payload_obj.get("merged") is True,
        closed_at=_as_optional_str(payload_obj.get("closed_at")),
        labels=_label_names(labels_obj if isinstance(labels_obj, list) else []),
        rebaseable=payload_obj.get("rebaseable") is True,
    )


def _parse_git_commit(payload_obj: Mapping[str, object]) -> GitCommit:
    tree_obj = _as_object_dict(payload_obj.get("tree"))
    if tree_obj is None:
        raise RuntimeError("Unexpected GitHub response: commit without tree")
    parents_obj = payload_obj.get("parents")
    parent_shas: list[str] = []
    if isinstance(parents_obj, list):
        for entry in parents_obj:
            entry_obj = _as_object_dict(entry)
            if entry_obj is not None:
                parent_shas.append(_as_string(entry_obj.get("sha")))
    return GitCommit(
        sha=_as_string(payload_obj.get("sha")),
        tree_sha=_as_string(tree_obj.get("sha")),
        parent_shas=tuple(parent_shas),
        message=_as_string(payload_obj.get("message")),
        author=_parse_identity(payload_obj.get("author")),
        committer=_parse_identity(payload_obj.get("committer")),
    )


def _parse_identity(value: object) -> GitIdentity | None:
    value_obj = _as_object_dict(value)
    if value_obj is None:
        return None
    return GitIdentity(
        name=_as_string(value_obj.get("name")),
        email=_as_string(value_obj.get("email")),
        date=_as_optional_str(value_obj.get("date")),
    )


def _identity_payload(identity: GitIdentity) -> dict[str, object]:
    payload: dict[str, object] = {"name": identity.name, "email": identity.email}
    if identity.date is not None:
        payload["date"] = identity.date
    return payload


def _label_names(entries: list[object]) -> tuple[str, ...]:
    names: list[str] = []
    for entry in entries:
        entry_obj = _as_object_dict(entry)
        if entry_obj is None:
            continue
        name = entry_obj.get("name")
        if isinstance(name, str):
            names.append(name)
    return tuple(names)


def _quote_ref(ref: str) -> str:
    return quote(ref, safe="/")


def _error_message(body: str) -> str:
    stripped = body.strip()
    if not stripped:
        return "<empty>"
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return stripped
    payload_obj = _as_object_dict(payload)
    if payload_obj is not None and isinstance(payload_obj.get("message"), str):
        return cast(str, payload_obj["message"])
    return stripped


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _as_mergeable_state(value: object) -> MergeableState:
    if isinstance(value, str) and value.strip().lower() in MERGEABLE_STATES:
        return cast(MergeableState, value.strip().lower())
    return "unknown"


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")
