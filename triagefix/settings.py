from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TRIAGEFIX_", extra="ignore")

    # Completion service (OpenAI-compatible chat completions API)
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4.1"
    openai_max_tokens: int = 4000
    openai_timeout_s: float = 90.0
    openai_max_retries: int = 3
    openai_retry_backoff_s: float = 1.0

    # Source hosting (GitHub REST)
    github_token: str | None = None
    github_repo: str | None = None  # owner/name
    github_base_branch: str = "main"
    github_api_base: str = "https://api.github.com"
    github_timeout_s: float = 15.0

    # Agent execution shell
    agent_timeout_s: float = 60.0
    agent_temperature: float = 0.3
    # Budget for the fix-generation call only.
    fix_generation_max_tokens: int = 6000

    # Orchestrator
    orchestrator_max_iterations: int = 3
    orchestrator_total_timeout_s: float = 120.0
    orchestrator_min_confidence: int = 70
    orchestrator_require_review: bool = True
    # When the agentic loop produces nothing, tell the caller to try the single-shot repair path.
    orchestrator_fallback_to_single_shot: bool = True

    # Patch applier
    auto_fix_min_confidence: int = 70
    auto_fix_branch_prefix: str = "fix/triage-agent/"
    # Refuse to commit when the line-scoped validator rejects the change set against the live file.
    auto_fix_validate_before_apply: bool = True

    # Rate-limit retry (GitHub). Only rate-limit responses are retried.
    retry_max_attempts: int = 4
    retry_base_delay_s: float = 1.0
    retry_max_delay_s: float = 30.0

    # Downstream validation workflow (optional). Example: "validate-fix.yml"
    validation_workflow: str | None = None
    validation_poll_attempts: int = 5
    validation_poll_interval_s: float = 3.0

    # Structured pipeline events (JSONL). Unset disables the audit trail.
    audit_log_path: str | None = "var/audit/triagefix_audit.jsonl"
