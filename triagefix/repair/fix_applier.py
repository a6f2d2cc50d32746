from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx

from triagefix.errors import BranchExistsError, GitHubApiError, NotFoundError
from triagefix.gitops.github_rest import GitHubRestClient
from triagefix.gitops.retry import RetryPolicy, with_rate_limit_retry
from triagefix.models import ApplyResult, CodeChange, FixRecommendation
from triagefix.repair.validator import validate_changes
from triagefix.telemetry.audit import AuditTrail

logger = logging.getLogger(__name__)

DEFAULT_BRANCH_PREFIX = "fix/triage-agent/"


@dataclass(frozen=True)
class FixApplierConfig:
    base_branch: str = "main"
    min_confidence: float = 70
    branch_prefix: str = DEFAULT_BRANCH_PREFIX
    validate_before_apply: bool = True
    validation_workflow: Optional[str] = None
    validation_poll_attempts: int = 5
    validation_poll_interval_s: float = 3.0

    @classmethod
    def from_settings(cls, settings: Any) -> "FixApplierConfig":
        return cls(
            base_branch=settings.github_base_branch,
            min_confidence=settings.auto_fix_min_confidence,
            branch_prefix=settings.auto_fix_branch_prefix,
            validate_before_apply=settings.auto_fix_validate_before_apply,
            validation_workflow=settings.validation_workflow,
            validation_poll_attempts=settings.validation_poll_attempts,
            validation_poll_interval_s=settings.validation_poll_interval_s,
        )


@dataclass(frozen=True)
class ValidationParams:
    branch: str
    test_file: str
    commit_sha: Optional[str] = None
    test_name: Optional[str] = None
    extra_inputs: Dict[str, str] = field(default_factory=dict)

    def workflow_inputs(self) -> Dict[str, str]:
        inputs = {"branch": self.branch, "test_file": self.test_file}
        if self.commit_sha:
            inputs["commit_sha"] = self.commit_sha
        if self.test_name:
            inputs["test_name"] = self.test_name
        inputs.update(self.extra_inputs)
        return inputs


@dataclass(frozen=True)
class ValidationRun:
    run_id: Optional[int]
    status: str


def sanitize_for_branch(text: str, *, max_len: int = 50) -> str:
    s = re.sub(r"[^a-zA-Z0-9]", "-", text)
    s = re.sub(r"-+", "-", s).strip("-")
    return s[:max_len].strip("-") or "fix"


def generate_fix_branch_name(
    test_file: str,
    timestamp: Optional[datetime] = None,
    unique: bool = False,
    *,
    prefix: str = DEFAULT_BRANCH_PREFIX,
) -> str:
    """
    `<prefix><sanitized-file>-<YYYYMMDD>`, plus `-<HHMMSS>-<random4>` when `unique`.

    The unique form is used after a name collision, so it always differs from
    the plain form for the same file and second.
    """
    ts = timestamp or datetime.now(timezone.utc)
    name = f"{prefix}{sanitize_for_branch(test_file)}-{ts.strftime('%Y%m%d')}"
    if unique:
        name += f"-{ts.strftime('%H%M%S')}-{secrets.token_hex(2)}"
    return name


def generate_fix_commit_message(fix: FixRecommendation, change: Optional[CodeChange] = None) -> str:
    files = ", ".join(dict.fromkeys(c.file for c in fix.proposed_changes))
    parts = [
        f"fix(test): {fix.summary[:50]}",
        "",
        "Automated fix generated by triagefix.",
        "",
        f"Files modified: {files}",
        f"Confidence: {fix.confidence:g}%",
    ]
    if fix.reasoning:
        parts += ["", fix.reasoning]
    if change is not None and change.justification:
        parts += ["", f"Change in {change.file}: {change.justification}"]
    return "\n".join(parts)


class GitHubFixApplier:
    """
    Commits an accepted FixRecommendation to a fresh branch through the GitHub API.

    Each change is a first-occurrence literal replacement over the whole file
    on the new branch. A branch that ends up with no commits is deleted.
    """

    def __init__(
        self,
        client: GitHubRestClient,
        config: Optional[FixApplierConfig] = None,
        *,
        retry: Optional[RetryPolicy] = None,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.client = client
        self.config = config or FixApplierConfig()
        self.retry = retry or RetryPolicy()
        self.audit = audit or AuditTrail()
        self.clock = clock

    def can_apply(self, fix: FixRecommendation) -> bool:
        if fix.confidence < self.config.min_confidence:
            logger.info("Fix confidence (%g%%) is below threshold (%g%%)", fix.confidence, self.config.min_confidence)
            return False
        if not fix.proposed_changes:
            logger.info("No proposed changes in fix recommendation")
            return False
        return True

    async def _call(self, label: str, op: Callable[[], Any]) -> Any:
        return await with_rate_limit_retry(op, policy=self.retry, label=label)

    async def apply_fix(
        self,
        fix: FixRecommendation,
        *,
        validate: Optional[bool] = None,
        timestamp: Optional[datetime] = None,
        test_name: Optional[str] = None,
    ) -> ApplyResult:
        if not fix.proposed_changes:
            return ApplyResult(success=False, error="No proposed changes")
        test_file = fix.proposed_changes[0].file
        self.audit.emit("apply.started", test_file=test_file, changes=len(fix.proposed_changes), confidence=fix.confidence)

        modified: List[str] = []
        branch: Optional[str] = None
        try:
            base_branch = self.config.base_branch or await self._call("default branch", self.client.get_repo_default_branch)
            base_sha = await self._call("base head", lambda: self.client.get_branch_head_sha(branch=base_branch))

            changes = list(fix.proposed_changes)
            do_validate = self.config.validate_before_apply if validate is None else validate
            if do_validate:
                rejected = await self._preflight(changes, base_sha)
                if rejected:
                    problems = [p for file_problems in rejected.values() for p in file_problems]
                    self.audit.emit("apply.rejected", files=list(rejected), errors=problems)
                    changes = [c for c in changes if c.file not in rejected]
                    if not changes:
                        return ApplyResult(success=False, error="Validation failed: " + "; ".join(problems))
                    logger.warning("Dropping changes to %s: %s", ", ".join(rejected), "; ".join(problems))

            branch = await self._create_branch(test_file, base_sha, timestamp or self.clock())

            commit_sha: Optional[str] = None
            # path -> (content, blob sha) as of the last commit on the branch
            files: Dict[str, tuple[str, str]] = {}
            for change in changes:
                sha = await self._apply_change(fix, change, branch, files)
                if sha is None:
                    continue
                commit_sha = sha
                if change.file not in modified:
                    modified.append(change.file)

            if not modified:
                await self._cleanup(branch)
                self.audit.emit("apply.finished", success=False, branch=branch, modified_files=[])
                return ApplyResult(success=False, modified_files=[], error="No files were successfully modified")
        except (GitHubApiError, httpx.HTTPError) as e:
            logger.error("Failed to apply fix: %s", e)
            if branch:
                await self._cleanup(branch)
            self.audit.emit("apply.finished", success=False, branch=branch, error=str(e))
            return ApplyResult(success=False, modified_files=modified, error=str(e))
        except Exception:
            if branch:
                await self._cleanup(branch)
            raise

        logger.info("Pushed fix branch %s (%s)", branch, commit_sha)
        result = ApplyResult(success=True, modified_files=modified, commit_sha=commit_sha, branch_name=branch)
        self.audit.emit("apply.finished", success=True, branch=branch, modified_files=modified, commit_sha=commit_sha)

        if self.config.validation_workflow:
            run = await self.trigger_validation(
                ValidationParams(branch=branch, test_file=test_file, commit_sha=commit_sha, test_name=test_name)
            )
            result = result.model_copy(update={"validation_run_id": run.run_id, "validation_status": run.status})
        return result

    async def _preflight(self, changes: List[CodeChange], ref: str) -> Dict[str, List[str]]:
        """
        Line-scoped validation of located changes against the files at `ref`.

        Returns the problems per rejected file. Missing files are left to the
        apply step, which skips them.
        """
        by_file: Dict[str, List[CodeChange]] = {}
        for c in changes:
            if c.line >= 1:
                by_file.setdefault(c.file, []).append(c)
        rejected: Dict[str, List[str]] = {}
        for path, file_changes in by_file.items():
            try:
                f = await self._call(f"get {path}", lambda path=path: self.client.get_file(path=path, ref=ref))
            except NotFoundError:
                logger.info("%s not found at %s; not validated", path, ref)
                continue
            result = validate_changes(file_changes, f.content)
            if result.errors:
                rejected[path] = [f"{path}: {e}" for e in result.errors]
            for w in result.warnings:
                logger.info("%s: %s", path, w)
        return rejected

    async def _create_branch(self, test_file: str, base_sha: str, ts: datetime) -> str:
        name = generate_fix_branch_name(test_file, ts, prefix=self.config.branch_prefix)
        try:
            await self._call("create branch", lambda: self.client.create_branch(new_branch=name, from_sha=base_sha))
        except BranchExistsError:
            name = generate_fix_branch_name(test_file, ts, unique=True, prefix=self.config.branch_prefix)
            logger.info("Branch name taken, retrying as %s", name)
            await self._call("create branch", lambda: self.client.create_branch(new_branch=name, from_sha=base_sha))
        logger.info("Created fix branch: %s", name)
        self.audit.emit("apply.branch_created", branch=name, base_sha=base_sha)
        return name

    async def _apply_change(
        self,
        fix: FixRecommendation,
        change: CodeChange,
        branch: str,
        files: Dict[str, tuple[str, str]],
    ) -> Optional[str]:
        path = change.file
        if path not in files:
            try:
                f = await self._call(f"get {path}", lambda: self.client.get_file(path=path, ref=branch))
            except NotFoundError:
                logger.warning("File %s not found on %s; skipping change", path, branch)
                self.audit.emit("apply.change_skipped", file=path, reason="file_not_found")
                return None
            files[path] = (f.content, f.sha)

        content, sha = files[path]
        if not change.old_code or change.old_code not in content:
            logger.warning("Could not find old code to replace in %s", path)
            self.audit.emit("apply.change_skipped", file=path, reason="old_code_not_found")
            return None

        new_content = content.replace(change.old_code, change.new_code, 1)
        message = generate_fix_commit_message(fix, change)
        commit = await self._call(
            f"update {path}",
            lambda: self.client.update_file(path=path, content_text=new_content, branch=branch, message=message, known_sha=sha),
        )
        files[path] = (new_content, commit.blob_sha)
        logger.info("Modified: %s", path)
        self.audit.emit("apply.file_committed", file=path, commit_sha=commit.commit_sha)
        return commit.commit_sha

    async def _cleanup(self, branch: str) -> None:
        try:
            await self._call("delete branch", lambda: self.client.delete_branch(branch=branch))
        except (GitHubApiError, httpx.HTTPError) as e:
            logger.debug("Failed to delete branch %s: %s", branch, e)
            return
        self.audit.emit("apply.branch_deleted", branch=branch)

    async def trigger_validation(self, params: ValidationParams) -> ValidationRun:
        """
        Dispatch the validation workflow and look for the run it queued.

        Correlation is best effort: the first queued or in-progress dispatch run
        on the branch created after the dispatch is taken to be ours.
        """
        workflow = self.config.validation_workflow
        if not workflow:
            return ValidationRun(run_id=None, status="not_configured")

        # GitHub timestamps have second resolution and clocks drift.
        dispatched_at = self.clock() - timedelta(seconds=5)
        try:
            await self._call(
                "dispatch workflow",
                lambda: self.client.dispatch_workflow(workflow=workflow, ref=params.branch, inputs=params.workflow_inputs()),
            )
        except (GitHubApiError, httpx.HTTPError) as e:
            logger.warning("Failed to dispatch %s: %s", workflow, e)
            return ValidationRun(run_id=None, status="dispatch_failed")
        self.audit.emit("apply.validation_dispatched", workflow=workflow, branch=params.branch)

        for attempt in range(1, max(1, self.config.validation_poll_attempts) + 1):
            await self.retry.sleep(self.config.validation_poll_interval_s)
            try:
                runs = await self._call(
                    "list runs",
                    lambda: self.client.list_workflow_runs(workflow=workflow, branch=params.branch, event="workflow_dispatch"),
                )
            except (GitHubApiError, httpx.HTTPError) as e:
                logger.debug("Polling runs of %s failed (attempt %d): %s", workflow, attempt, e)
                continue
            run = _find_dispatched_run(runs, dispatched_at)
            if run is not None:
                logger.info("Validation run %s is %s", run.run_id, run.status)
                return run
        logger.info("Dispatched %s but could not correlate a run", workflow)
        return ValidationRun(run_id=None, status="dispatched")


def _parse_github_ts(raw: Any) -> Optional[datetime]:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


def _find_dispatched_run(runs: List[Dict[str, Any]], dispatched_at: datetime) -> Optional[ValidationRun]:
    for run in runs:
        if run.get("status") not in ("queued", "in_progress"):
            continue
        created = _parse_github_ts(run.get("created_at"))
        if created is None or created < dispatched_at:
            continue
        run_id = run.get("id")
        return ValidationRun(run_id=int(run_id) if isinstance(run_id, int) else None, status=str(run["status"]))
    return None
