from __future__ import annotations

import json
from urllib.parse import parse_qs, urlparse

import pytest

from autorebase.github_gateway import (
    GitHubApiError,
    GitHubGateway,
    _as_int,
    _as_mergeable_state,
    _as_object_dict,
    _as_optional_str,
    _as_string,
    _error_message,
    _parse_http_response,
    parse_pull_request_payload,
)
from autorebase.models import GitIdentity
from autorebase.observability import configure_logging


def _install_api(
    monkeypatch: pytest.MonkeyPatch, responses: list[object]
) -> list[tuple[str, str, dict[str, object] | None]]:
    calls: list[tuple[str, str, dict[str, object] | None]] = []

    def fake_api(
        self: GitHubGateway, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        _ = self
        calls.append((method, path, payload))
        return responses.pop(0)

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)
    return calls


def _pull_payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "number": 12,
        "base": {"ref": "main", "sha": "stale"},
        "head": {"ref": "feature/x", "sha": "h1"},
        "mergeable_state": "behind",
        "merged": False,
        "closed_at": None,
        "labels": [{"name": "autorebase"}, {"name": "bug"}, "junk"],
        "rebaseable": True,
    }
    payload.update(overrides)
    return payload


def test_get_reference_sha_quotes_ref(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _install_api(monkeypatch, [{"object": {"sha": "abc"}}])
    gateway = GitHubGateway("o", "r")

    assert gateway.get_reference_sha("feature/a b") == "abc"
    assert calls == [("GET", "/repos/o/r/git/ref/heads/feature/a%20b", None)]


def test_get_reference_sha_rejects_missing_object(monkeypatch: pytest.MonkeyPatch) -> None:
    _install_api(monkeypatch, [{"ref": "refs/heads/x"}])
    with pytest.raises(RuntimeError, match="missing reference object"):
        GitHubGateway("o", "r").get_reference_sha("x")


def test_reference_mutations_send_expected_payloads(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _install_api(monkeypatch, [{}, {}, None])
    gateway = GitHubGateway("o", "r")

    gateway.create_reference("tmp", "s1")
    gateway.update_reference("tmp", "s2", force=False)
    gateway.delete_reference("tmp")

    assert calls == [
        ("POST", "/repos/o/r/git/refs", {"ref": "refs/heads/tmp", "sha": "s1"}),
        ("PATCH", "/repos/o/r/git/refs/heads/tmp", {"sha": "s2", "force": False}),
        ("DELETE", "/repos/o/r/git/refs/heads/tmp", None),
    ]


def test_get_and_create_commit(monkeypatch: pytest.MonkeyPatch) -> None:
    commit_payload = {
        "sha": "c2",
        "tree": {"sha": "t2"},
        "parents": [{"sha": "c1"}, "junk"],
        "message": "Add thing",
        "author": {"name": "Ada", "email": "ada@example.com", "date": "2026-01-01T00:00:00Z"},
        "committer": None,
    }
    calls = _install_api(monkeypatch, [commit_payload, commit_payload])
    gateway = GitHubGateway("o", "r")

    commit = gateway.get_commit("c2")
    assert commit.tree_sha == "t2"
    assert commit.parent_shas == ("c1",)
    assert commit.author == GitIdentity(
        name="Ada", email="ada@example.com", date="2026-01-01T00:00:00Z"
    )
    assert commit.committer is None

    created = gateway.create_commit(
        message="Add thing",
        tree_sha="t2",
        parent_shas=("c1",),
        author=GitIdentity(name="Ada", email="ada@example.com", date=None),
    )
    assert created.sha == "c2"
    assert calls[1] == (
        "POST",
        "/repos/o/r/git/commits",
        {
            "message": "Add thing",
            "tree": "t2",
            "parents": ["c1"],
            "author": {"name": "Ada", "email": "ada@example.com"},
        },
    )


def test_get_commit_requires_tree(monkeypatch: pytest.MonkeyPatch) -> None:
    _install_api(monkeypatch, [{"sha": "c"}])
    with pytest.raises(RuntimeError, match="commit without tree"):
        GitHubGateway("o", "r").get_commit("c")


def test_create_blob_and_tree(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _install_api(monkeypatch, [{"sha": "b1"}, {"sha": "t1"}])
    gateway = GitHubGateway("o", "r")

    assert gateway.create_blob("hello\n") == "b1"
    assert gateway.create_tree({"z.txt": "b1", "a.txt": "b0"}, base_tree="t0") == "t1"
    assert calls[0][2] == {"content": "hello\n", "encoding": "utf-8"}
    assert calls[1][2] == {
        "tree": [
            {"path": "a.txt", "mode": "100644", "type": "blob", "sha": "b0"},
            {"path": "z.txt", "mode": "100644", "type": "blob", "sha": "b1"},
        ],
        "base_tree": "t0",
    }


def test_merge_returns_tree_or_none(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _install_api(monkeypatch, [{"commit": {"tree": {"sha": "t9"}}}, None, {"commit": {}}])
    gateway = GitHubGateway("o", "r")

    assert gateway.merge(base="tmp", head="c1", commit_message="m") == "t9"
    assert gateway.merge(base="tmp", head="c1", commit_message="m") is None
    with pytest.raises(RuntimeError, match="merge commit without tree"):
        gateway.merge(base="tmp", head="c1", commit_message="m")
    assert calls[0] == (
        "POST",
        "/repos/o/r/merges",
        {"base": "tmp", "head": "c1", "commit_message": "m"},
    )


def test_get_pull_request_parses_snapshot(monkeypatch: pytest.MonkeyPatch) -> None:
    _install_api(monkeypatch, [_pull_payload()])

    snapshot = GitHubGateway("o", "r").get_pull_request(12)

    assert snapshot.number == 12
    assert snapshot.base_ref == "main"
    assert snapshot.head_ref == "feature/x"
    assert snapshot.head_sha == "h1"
    assert snapshot.mergeable_state == "behind"
    assert snapshot.labels == ("autorebase", "bug")
    assert snapshot.rebaseable is True
    assert snapshot.is_closed is False


def test_parse_pull_request_payload_tolerates_webhook_shape() -> None:
    snapshot = parse_pull_request_payload(
        _pull_payload(mergeable_state=None, rebaseable=None, labels=None, closed_at="t")
    )
    assert snapshot.mergeable_state == "unknown"
    assert snapshot.rebaseable is False
    assert snapshot.labels == ()
    assert snapshot.is_closed is True

    with pytest.raises(RuntimeError, match="missing pull request head/base"):
        parse_pull_request_payload({"number": 1})


def test_list_pull_request_commits_paginates(monkeypatch: pytest.MonkeyPatch) -> None:
    first_page = [
        {"sha": f"s{index}", "commit": {"message": f"commit {index}"}} for index in range(100)
    ]
    second_page = [{"sha": "last", "commit": {"message": "fixup! commit 1"}}, "junk"]
    calls = _install_api(monkeypatch, [first_page, second_page])

    commits = GitHubGateway("o", "r").list_pull_request_commits(3)

    assert len(commits) == 101
    assert commits[0].sha == "s0"
    assert commits[-1].subject == "fixup! commit 1"
    pages = [parse_qs(urlparse(path).query)["page"] for _, path, _ in calls]
    assert pages == [["1"], ["2"]]


def test_list_pull_request_commits_rejects_non_list(monkeypatch: pytest.MonkeyPatch) -> None:
    _install_api(monkeypatch, [{"bad": "shape"}])
    with pytest.raises(RuntimeError, match="expected list of commits"):
        GitHubGateway("o", "r").list_pull_request_commits(3)


def test_merge_pull_request_uses_merge_method(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _install_api(monkeypatch, [{"merged": True}])
    GitHubGateway("o", "r").merge_pull_request(5)
    assert calls == [("PUT", "/repos/o/r/pulls/5/merge", {"merge_method": "rebase"})]


def test_merge_pull_request_pins_head_sha(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _install_api(monkeypatch, [{"merged": True}])
    GitHubGateway("o", "r").merge_pull_request(5, sha="a" * 40)
    assert calls == [
        ("PUT", "/repos/o/r/pulls/5/merge", {"merge_method": "rebase", "sha": "a" * 40})
    ]


def test_merge_pull_request_logs_and_reraises(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)

    def fake_api(
        self: GitHubGateway, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        _ = self, payload
        raise GitHubApiError(method=method, path=path, status_code=405, message="not mergeable")

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)

    with pytest.raises(GitHubApiError) as exc_info:
        GitHubGateway("o", "r").merge_pull_request(5)
    assert exc_info.value.status_code == 405
    stderr = capsys.readouterr().err
    assert "event=github_pr_merge_failed" in stderr
    assert "error_type=GitHubApiError" in stderr


def test_iter_search_issue_numbers_fetches_pages_lazily(monkeypatch: pytest.MonkeyPatch) -> None:
    first_page = {"items": [{"number": index} for index in range(1, 101)]}
    second_page = {"items": [{"number": 101}]}
    calls = _install_api(monkeypatch, [first_page, second_page])
    gateway = GitHubGateway("o", "r")

    numbers = gateway.iter_search_issue_numbers('is:pr label:"autorebase"')
    assert next(numbers) == 1
    assert len(calls) == 1
    query = parse_qs(urlparse(calls[0][1]).query)
    assert query["q"] == ['is:pr label:"autorebase"']
    assert query["sort"] == ["created"]
    assert query["order"] == ["asc"]

    rest = list(numbers)
    assert rest[-1] == 101
    assert len(rest) == 100
    assert len(calls) == 2


def test_iter_search_issue_numbers_rejects_bad_shape(monkeypatch: pytest.MonkeyPatch) -> None:
    _install_api(monkeypatch, [{"total_count": 0}])
    with pytest.raises(RuntimeError, match="expected items list"):
        list(GitHubGateway("o", "r").iter_search_issue_numbers("q"))


def test_label_and_comment_endpoints(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _install_api(
        monkeypatch,
        [[], None, [{"name": "autorebase"}], {"id": 1}, {"permission": " Write "}, {}],
    )
    gateway = GitHubGateway("o", "r")

    gateway.add_labels(4, ("autorebase",))
    gateway.remove_label(4, "needs rebase/now")
    assert gateway.list_issue_labels(4) == ("autorebase",)
    gateway.post_issue_comment(4, "hello")
    assert gateway.get_collaborator_permission("ada") == "write"
    gateway.create_commit_status("c1", state="success")

    assert calls[0] == ("POST", "/repos/o/r/issues/4/labels", {"labels": ["autorebase"]})
    assert calls[1] == ("DELETE", "/repos/o/r/issues/4/labels/needs%20rebase%2Fnow", None)
    assert calls[3] == ("POST", "/repos/o/r/issues/4/comments", {"body": "hello"})
    assert calls[4][1] == "/repos/o/r/collaborators/ada/permission"
    assert calls[5] == (
        "POST",
        "/repos/o/r/statuses/c1",
        {"state": "success", "context": "default"},
    )


def test_api_json_invokes_gh_api(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[list[str], str | None, bool]] = []

    def fake_run(
        cmd: list[str],
        *,
        input_text: str | None = None,
        check: bool = True,
    ) -> str:
        calls.append((cmd, input_text, check))
        return "\n".join(("HTTP/2.0 200 OK", 'ETag: "etag-1"', "", '{"ok": true}'))

    monkeypatch.setattr("autorebase.github_gateway.run", fake_run)

    gateway = GitHubGateway("o", "r")
    assert gateway._api_json("GET", "/path") == {"ok": True}
    assert gateway._api_json("post", "/path", payload={"k": "v"}) == {"ok": True}

    assert calls[0][0] == ["gh", "api", "--method", "GET", "--include", "/path"]
    assert calls[0][2] is False
    assert calls[1][0][:4] == ["gh", "api", "--method", "POST"]
    assert "--input" in calls[1][0]
    assert json.loads(calls[1][1] or "") == {"k": "v"}


def test_api_json_returns_none_for_empty_body(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = cmd, kwargs
        return "HTTP/2.0 204 No Content\n\n"

    monkeypatch.setattr("autorebase.github_gateway.run", fake_run)

    assert GitHubGateway("o", "r")._api_json("DELETE", "/path") is None


def test_api_json_raises_github_api_error_with_status(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = cmd, kwargs
        return "\n".join(("HTTP/2.0 409 Conflict", "", '{"message":"Merge conflict"}'))

    monkeypatch.setattr("autorebase.github_gateway.run", fake_run)

    with pytest.raises(GitHubApiError, match="status 409: Merge conflict") as exc_info:
        GitHubGateway("o", "r")._api_json("POST", "/repos/o/r/merges", payload={})
    assert exc_info.value.status_code == 409
    assert exc_info.value.message == "Merge conflict"
    stderr = capsys.readouterr().err
    assert "event=github_api_failed" in stderr
    assert "status_code=409" in stderr


def test_parse_http_response_handles_multiple_status_lines() -> None:
    status, headers, body = _parse_http_response(
        "\r\n".join(
            (
                "HTTP/2.0 301 Moved Permanently",
                "Location: somewhere",
                "",
                "HTTP/2.0 200 OK",
                'ETag: "abc"',
                "X-Ignored",
                "",
                '{"ok": true}',
            )
        )
    )

    assert status == 200
    assert headers == {"etag": '"abc"'}
    assert body == '{"ok": true}'


def test_parse_http_response_rejects_bad_status_output() -> None:
    with pytest.raises(RuntimeError, match="missing HTTP status"):
        _parse_http_response("not-http")

    with pytest.raises(RuntimeError, match="status line"):
        _parse_http_response("HTTP/2.0\n\n{}")

    with pytest.raises(RuntimeError, match="status line"):
        _parse_http_response("HTTP/2.0 okay\n\n{}")


def test_error_message_prefers_json_message() -> None:
    assert _error_message("") == "<empty>"
    assert _error_message('{"message": "Not Found"}') == "Not Found"
    assert _error_message('{"errors": []}') == '{"errors": []}'
    assert _error_message("plain failure") == "plain failure"


def test_coercion_helpers() -> None:
    assert _as_mergeable_state(" Behind ") == "behind"
    assert _as_mergeable_state("mystery") == "unknown"
    assert _as_mergeable_state(None) == "unknown"
    assert _as_object_dict({"a": 1}) == {"a": 1}
    assert _as_object_dict({1: "a"}) is None
    assert _as_object_dict([]) is None
    assert _as_string(None) == ""
    assert _as_string(3) == "3"
    assert _as_optional_str(None) is None
    assert _as_optional_str(4) == "4"
    assert _as_int("7", field="n") == 7
    with pytest.raises(RuntimeError, match="type for n"):
        _as_int(True, field="n")
    with pytest.raises(RuntimeError, match="value for n"):
        _as_int("x", field="n")
    with pytest.raises(RuntimeError, match="type for n"):
        _as_int(None, field="n")
