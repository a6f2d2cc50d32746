from __future__ import annotations

import asyncio
import base64
import json
from typing import Any, Dict

import httpx
import pytest

from triagefix.errors import (
    BranchExistsError,
    GitHubApiError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
)
from triagefix.gitops.github_rest import GitHubRestClient, classify_error
from triagefix.settings import Settings


def _make_transport(state: Dict[str, Any]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        method = request.method.upper()
        state.setdefault("seen", []).append((method, path, dict(request.url.params)))
        assert request.headers["Authorization"] == "Bearer t"

        if method == "GET" and path.endswith("/repos/owner/repo"):
            return httpx.Response(200, json={"default_branch": state["default_branch"]})

        if method == "GET" and path.endswith("/repos/owner/repo/git/ref/heads/main"):
            return httpx.Response(200, json={"object": {"sha": state["refs"]["heads/main"]["sha"]}})

        if method == "POST" and path.endswith("/repos/owner/repo/git/refs"):
            body = json.loads(request.content.decode("utf-8"))
            ref = body["ref"].replace("refs/", "")
            if ref in state["refs"]:
                return httpx.Response(422, json={"message": "Reference already exists"})
            state["refs"][ref] = {"sha": body["sha"]}
            return httpx.Response(201, json={"ref": body["ref"], "object": {"sha": body["sha"]}})

        if method == "DELETE" and "/repos/owner/repo/git/refs/heads/" in path:
            state["refs"].pop(path.split("/git/refs/", 1)[1], None)
            return httpx.Response(204)

        if method == "GET" and path.endswith("/repos/owner/repo/contents/cypress/e2e/a.cy.ts"):
            f = state["files"]["cypress/e2e/a.cy.ts"]
            encoded = base64.b64encode(f["content"].encode("utf-8")).decode("ascii")
            return httpx.Response(200, json={"type": "file", "sha": f["sha"], "content": encoded, "encoding": "base64"})

        if method == "PUT" and path.endswith("/repos/owner/repo/contents/cypress/e2e/a.cy.ts"):
            body = json.loads(request.content.decode("utf-8"))
            assert body["branch"].startswith("fix/")
            assert body["sha"] == state["files"]["cypress/e2e/a.cy.ts"]["sha"]
            state["files"]["cypress/e2e/a.cy.ts"] = {
                "sha": "NEWFILESHA",
                "content": base64.b64decode(body["content"]).decode("utf-8"),
            }
            return httpx.Response(200, json={"content": {"sha": "NEWFILESHA"}, "commit": {"sha": "COMMITSHA"}})

        if method == "GET" and path.endswith("/contents/cypress/e2e/dir"):
            return httpx.Response(200, json=[{"type": "file", "name": "x.cy.ts"}])

        if method == "POST" and path.endswith("/actions/workflows/validate.yml/dispatches"):
            state["dispatched"] = json.loads(request.content.decode("utf-8"))
            return httpx.Response(204)

        if method == "GET" and path.endswith("/actions/workflows/validate.yml/runs"):
            return httpx.Response(200, json={"workflow_runs": [{"id": 7, "status": "queued"}, "junk"]})

        return httpx.Response(404, json={"message": f"unhandled {method} {path}"})

    return httpx.MockTransport(handler)


def _state() -> Dict[str, Any]:
    return {
        "default_branch": "main",
        "refs": {"heads/main": {"sha": "BASESHA"}},
        "files": {"cypress/e2e/a.cy.ts": {"sha": "FILESHA", "content": "cy.get('#old');\n"}},
    }


def test_github_rest_client_branch_file_commit_flow() -> None:
    state = _state()
    c = GitHubRestClient(token="t", repo="owner/repo", transport=_make_transport(state))

    async def flow() -> None:
        base = await c.get_repo_default_branch()
        assert base == "main"

        sha = await c.get_branch_head_sha(branch=base)
        assert sha == "BASESHA"

        await c.create_branch(new_branch="fix/abcd1234", from_sha=sha)
        assert state["refs"]["heads/fix/abcd1234"]["sha"] == "BASESHA"

        f = await c.get_file(path="cypress/e2e/a.cy.ts", ref="fix/abcd1234")
        assert f.content == "cy.get('#old');\n"
        assert f.sha == "FILESHA"

        commit = await c.update_file(
            path="cypress/e2e/a.cy.ts",
            content_text="cy.get('#new');\n",
            branch="fix/abcd1234",
            message="fix(test): new id",
            known_sha=f.sha,
        )
        assert commit.commit_sha == "COMMITSHA"
        assert commit.blob_sha == "NEWFILESHA"
        assert state["files"]["cypress/e2e/a.cy.ts"]["content"] == "cy.get('#new');\n"

        await c.delete_branch(branch="fix/abcd1234")
        assert "heads/fix/abcd1234" not in state["refs"]

    asyncio.run(flow())


def test_create_branch_collision_is_branch_exists() -> None:
    c = GitHubRestClient(token="t", repo="owner/repo", transport=_make_transport(_state()))
    with pytest.raises(BranchExistsError):
        asyncio.run(c.create_branch(new_branch="main", from_sha="BASESHA"))


def test_get_file_rejects_directories_and_missing_paths() -> None:
    c = GitHubRestClient(token="t", repo="owner/repo", transport=_make_transport(_state()))
    with pytest.raises(NotFoundError):
        asyncio.run(c.get_file(path="cypress/e2e/dir", ref="main"))
    with pytest.raises(NotFoundError):
        asyncio.run(c.get_file(path="cypress/e2e/missing.cy.ts", ref="main"))


def test_dispatch_and_list_workflow_runs() -> None:
    state = _state()
    c = GitHubRestClient(token="t", repo="owner/repo", transport=_make_transport(state))
    asyncio.run(c.dispatch_workflow(workflow="validate.yml", ref="fix/b", inputs={"test_file": "a.cy.ts", "attempt": 2}))
    assert state["dispatched"] == {"ref": "fix/b", "inputs": {"test_file": "a.cy.ts", "attempt": "2"}}

    runs = asyncio.run(c.list_workflow_runs(workflow="validate.yml", branch="fix/b", event="workflow_dispatch"))
    assert runs == [{"id": 7, "status": "queued"}]
    assert state["seen"][-1][2] == {"per_page": "10", "branch": "fix/b", "event": "workflow_dispatch"}


def test_classify_error_taxonomy() -> None:
    assert isinstance(classify_error(httpx.Response(429, json={"message": "slow"})), RateLimitError)
    assert isinstance(
        classify_error(httpx.Response(403, headers={"x-ratelimit-remaining": "0"}, json={"message": "Forbidden"})),
        RateLimitError,
    )
    assert isinstance(
        classify_error(httpx.Response(403, json={"message": "You have exceeded a secondary rate limit"})),
        RateLimitError,
    )
    assert isinstance(classify_error(httpx.Response(403, json={"message": "Resource not accessible"})), PermissionDeniedError)
    assert isinstance(classify_error(httpx.Response(401, json={"message": "Bad credentials"})), PermissionDeniedError)
    assert isinstance(classify_error(httpx.Response(404, json={"message": "Not Found"})), NotFoundError)
    assert isinstance(classify_error(httpx.Response(422, json={"message": "Reference already exists"})), BranchExistsError)

    other = classify_error(httpx.Response(500, text="boom"), path="git/refs")
    assert type(other) is GitHubApiError
    assert str(other) == "github_http_500 (git/refs): boom"


def test_classify_error_reads_retry_after() -> None:
    err = classify_error(httpx.Response(429, headers={"retry-after": "12"}, json={"message": "slow"}))
    assert isinstance(err, RateLimitError)
    assert err.retry_after_s == 12.0

    bad = classify_error(httpx.Response(429, headers={"retry-after": "soon"}, json={}))
    assert bad.retry_after_s is None


def test_from_settings_requires_token_and_repo() -> None:
    with pytest.raises(ValueError):
        GitHubRestClient.from_settings(Settings())
    c = GitHubRestClient.from_settings(Settings(github_token="t", github_repo="owner/repo", github_timeout_s=5))
    assert c.repo == "owner/repo"
    assert c.timeout_s == 5
