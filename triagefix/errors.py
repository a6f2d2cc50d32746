"""Exception types shared across the repair pipeline."""

from __future__ import annotations


class TriageFixError(Exception):
    """Base class for all triagefix errors."""


class AgentParseError(TriageFixError):
    """Raised when a model response is missing required fields or is not JSON."""

    def __init__(self, agent_name: str, reason: str):
        self.agent_name = agent_name
        self.reason = reason
        super().__init__(f"{agent_name}: failed to parse agent response: {reason}")


class CompletionError(TriageFixError):
    """Raised when the completion service returns an unusable response."""


class GitHubApiError(TriageFixError):
    """A GitHub REST call returned a non-success status."""

    def __init__(self, status_code: int, message: str, *, path: str | None = None):
        self.status_code = status_code
        self.message = message
        self.path = path
        where = f" ({path})" if path else ""
        super().__init__(f"github_http_{status_code}{where}: {message}")


class RateLimitError(GitHubApiError):
    """Primary or secondary rate limit hit. The only retryable GitHub error."""

    def __init__(self, status_code: int, message: str, *, path: str | None = None, retry_after_s: float | None = None):
        super().__init__(status_code, message, path=path)
        self.retry_after_s = retry_after_s


class NotFoundError(GitHubApiError):
    """Repository, ref or file does not exist (or is invisible to the token)."""


class PermissionDeniedError(GitHubApiError):
    """Token lacks the scope required for the call."""


class BranchExistsError(GitHubApiError):
    """Creating a ref failed because the branch name is already taken."""
