from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from triagefix.errors import (
    BranchExistsError,
    GitHubApiError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
)


@dataclass(frozen=True)
class RepoFile:
    path: str
    content: str
    sha: str


@dataclass(frozen=True)
class FileCommit:
    commit_sha: str
    blob_sha: str


def classify_error(response: httpx.Response, *, path: str | None = None) -> GitHubApiError:
    """Map a non-success GitHub response onto the error taxonomy (transient vs permanent)."""
    status = response.status_code
    try:
        body = response.json()
        message = str(body.get("message") or "") if isinstance(body, dict) else response.text
    except ValueError:
        message = response.text
    message = (message or "")[:500]
    lowered = message.lower()

    if status == 429 or (
        status == 403 and (response.headers.get("x-ratelimit-remaining") == "0" or "rate limit" in lowered)
    ):
        retry_after: Optional[float] = None
        raw = response.headers.get("retry-after")
        if raw:
            try:
                retry_after = float(raw)
            except ValueError:
                retry_after = None
        return RateLimitError(status, message, path=path, retry_after_s=retry_after)
    if status in (401, 403):
        return PermissionDeniedError(status, message, path=path)
    if status == 404:
        return NotFoundError(status, message, path=path)
    if status == 422 and "reference already exists" in lowered:
        return BranchExistsError(status, message, path=path)
    return GitHubApiError(status, message, path=path)


@dataclass(frozen=True)
class GitHubRestClient:
    """
    Minimal async GitHub REST wrapper for committing test fixes.

    Supports:
    - resolve branch heads, create/delete branches
    - read files and update them via the Contents API (commits server-side)
    - dispatch a workflow and list its recent runs

    Notes:
    - No git checkout or push is needed; HTTPS + token is enough.
    - The repository is fixed per client instance; nothing is read from ambient state.
    - Mockable in tests through an httpx transport override.
    """

    token: str
    repo: str  # owner/name
    api_base: str = "https://api.github.com"
    timeout_s: float = 15.0
    transport: httpx.AsyncBaseTransport | None = None

    @classmethod
    def from_settings(cls, settings: Any) -> "GitHubRestClient":
        if not settings.github_token or not settings.github_repo:
            raise ValueError("TRIAGEFIX_GITHUB_TOKEN and TRIAGEFIX_GITHUB_REPO are required")
        return cls(
            token=settings.github_token,
            repo=settings.github_repo,
            api_base=settings.github_api_base,
            timeout_s=settings.github_timeout_s,
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport)

    def _url(self, path: str) -> str:
        return f"{self.api_base.rstrip('/')}/repos/{self.repo}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        async with self._client() as c:
            r = await c.request(method, self._url(path), headers=self._headers(), json=json, params=params)
        if r.status_code >= 400:
            raise classify_error(r, path=path)
        return r

    async def get_repo_default_branch(self) -> str:
        async with self._client() as c:
            r = await c.get(f"{self.api_base.rstrip('/')}/repos/{self.repo}", headers=self._headers())
        if r.status_code >= 400:
            raise classify_error(r, path="")
        return str(r.json().get("default_branch") or "main")

    async def get_branch_head_sha(self, *, branch: str) -> str:
        r = await self._request("GET", f"git/ref/heads/{branch}")
        sha = (r.json().get("object") or {}).get("sha")
        if not sha:
            raise GitHubApiError(r.status_code, f"ref heads/{branch} has no object sha", path=f"git/ref/heads/{branch}")
        return str(sha)

    async def create_branch(self, *, new_branch: str, from_sha: str) -> None:
        # 422 "Reference already exists" surfaces as BranchExistsError so callers can pick another name.
        await self._request("POST", "git/refs", json={"ref": f"refs/heads/{new_branch}", "sha": from_sha})

    async def delete_branch(self, *, branch: str) -> None:
        await self._request("DELETE", f"git/refs/heads/{branch}")

    async def get_file(self, *, path: str, ref: str) -> RepoFile:
        api_path = f"contents/{quote(path.lstrip('/'))}"
        r = await self._request("GET", api_path, params={"ref": ref})
        data = r.json()
        if not isinstance(data, dict) or data.get("type", "file") != "file":
            raise NotFoundError(404, f"{path} is not a file", path=api_path)
        raw = data.get("content") or ""
        encoding = data.get("encoding") or "base64"
        if encoding == "base64":
            text = base64.b64decode(raw).decode("utf-8", errors="replace")
        else:
            text = str(raw)
        return RepoFile(path=path.lstrip("/"), content=text, sha=str(data.get("sha") or ""))

    async def update_file(
        self,
        *,
        path: str,
        content_text: str,
        branch: str,
        message: str,
        known_sha: Optional[str] = None,
    ) -> FileCommit:
        b64 = base64.b64encode(content_text.encode("utf-8")).decode("ascii")
        payload: Dict[str, Any] = {"message": message, "content": b64, "branch": branch}
        if known_sha:
            payload["sha"] = known_sha
        r = await self._request("PUT", f"contents/{quote(path.lstrip('/'))}", json=payload)
        data = r.json() if r.content else {}
        return FileCommit(
            commit_sha=str((data.get("commit") or {}).get("sha") or ""),
            blob_sha=str((data.get("content") or {}).get("sha") or ""),
        )

    async def dispatch_workflow(self, *, workflow: str, ref: str, inputs: Optional[Dict[str, Any]] = None) -> None:
        payload: Dict[str, Any] = {"ref": ref}
        if inputs:
            payload["inputs"] = {k: str(v) for k, v in inputs.items()}
        await self._request("POST", f"actions/workflows/{workflow}/dispatches", json=payload)

    async def list_workflow_runs(
        self,
        *,
        workflow: str,
        branch: Optional[str] = None,
        event: Optional[str] = None,
        per_page: int = 10,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"per_page": per_page}
        if branch:
            params["branch"] = branch
        if event:
            params["event"] = event
        r = await self._request("GET", f"actions/workflows/{workflow}/runs", params=params)
        runs = r.json().get("workflow_runs") or []
        return [run for run in runs if isinstance(run, dict)]
