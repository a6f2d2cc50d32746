from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from triagefix.agents.analysis import AnalysisAgent, AnalysisInput
from triagefix.agents.base import AgentConfig
from triagefix.agents.code_reading import CodeReadingAgent, CodeReadingInput, SourceFetcher
from triagefix.agents.fix_generation import FixGenerationAgent, FixGenerationInput
from triagefix.agents.investigation import InvestigationAgent, InvestigationInput
from triagefix.agents.review import (
    ReviewAgent,
    ReviewInput,
    check_changes_against_context,
    format_review_feedback,
)
from triagefix.llm.openai_client import CompletionClient
from triagefix.models import (
    AgentContext,
    AgentResults,
    FixGenerationOutput,
    FixRecommendation,
    OrchestrationResult,
    Outcome,
    ReviewSeverity,
)
from triagefix.telemetry.audit import AuditTrail

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrchestratorConfig:
    max_iterations: int = 3
    total_timeout_s: float = 120.0
    min_confidence: float = 70
    require_review: bool = True
    fallback_to_single_shot: bool = True

    @classmethod
    def from_settings(cls, settings: Any) -> "OrchestratorConfig":
        return cls(
            max_iterations=settings.orchestrator_max_iterations,
            total_timeout_s=settings.orchestrator_total_timeout_s,
            min_confidence=settings.orchestrator_min_confidence,
            require_review=settings.orchestrator_require_review,
            fallback_to_single_shot=settings.orchestrator_fallback_to_single_shot,
        )


class State(str, Enum):
    INIT = "INIT"
    ANALYZING = "ANALYZING"
    READING = "READING"
    INVESTIGATING = "INVESTIGATING"
    GENERATING = "GENERATING"
    GATING = "GATING"
    REVIEWING = "REVIEWING"
    FEEDBACK = "FEEDBACK"
    DONE = "DONE"


@dataclass
class _Run:
    """Mutable progress of one orchestration; survives a global timeout."""

    results: AgentResults = field(default_factory=AgentResults)
    state: State = State.INIT
    iterations: int = 0
    feedback: Optional[str] = None
    last_fix: Optional[FixGenerationOutput] = None
    # Set when the last fix was rejected with a CRITICAL issue (model or deterministic).
    last_fix_blocked: bool = False

    def enter(self, state: State) -> None:
        logger.debug("orchestrator %s -> %s (iteration %d)", self.state.value, state.value, self.iterations)
        self.state = state


@dataclass(frozen=True)
class _Terminal:
    outcome: Outcome
    fix: Optional[FixRecommendation] = None
    error: Optional[str] = None


class AgentOrchestrator:
    """
    Drives Analysis -> Code-Reading -> Investigation -> (Fix-Generation -> gate -> Review)*.

    Terminal outcomes are enumerated in `Outcome`; every run returns an
    OrchestrationResult and never raises for stage failures.
    """

    def __init__(
        self,
        client: Optional[CompletionClient],
        config: Optional[OrchestratorConfig] = None,
        *,
        source_fetcher: Optional[SourceFetcher] = None,
        agent_config: Optional[AgentConfig] = None,
        fix_generation_max_tokens: int = 6000,
        audit: Optional[AuditTrail] = None,
    ):
        self.config = config or OrchestratorConfig()
        self.audit = audit or AuditTrail()
        self.analysis_agent = AnalysisAgent(client, agent_config)
        self.code_reading_agent = CodeReadingAgent(source_fetcher)
        self.investigation_agent = InvestigationAgent(client, agent_config)
        self.fix_generation_agent = FixGenerationAgent(client, agent_config, max_tokens=fix_generation_max_tokens)
        self.review_agent = ReviewAgent(client, agent_config)

    async def orchestrate(self, context: AgentContext) -> OrchestrationResult:
        started = time.monotonic()
        run = _Run()
        logger.info("Starting agentic repair pipeline for %s (%s)", context.test_file, context.test_name)
        self.audit.emit("orchestration.started", test_file=context.test_file, test_name=context.test_name)

        try:
            # wait_for cancels whichever stage is in flight when the deadline passes.
            terminal = await asyncio.wait_for(self._run_pipeline(context, run), timeout=self.config.total_timeout_s)
        except asyncio.TimeoutError:
            terminal = _Terminal(
                outcome=Outcome.timeout,
                error=f"Orchestration timed out after {self.config.total_timeout_s:g}s",
            )
        run.enter(State.DONE)

        total_ms = int((time.monotonic() - started) * 1000)
        success = terminal.fix is not None
        if success:
            approach = "agentic"
            logger.info("Agentic repair completed in %dms with %d iteration(s)", total_ms, run.iterations)
        else:
            # A pipeline cut off by the deadline never hands over to single-shot.
            if terminal.outcome == Outcome.timeout or not self.config.fallback_to_single_shot:
                approach = "failed"
            else:
                approach = "single-shot"
            logger.warning("Agentic repair failed (%s): %s", terminal.outcome.value, terminal.error)

        self.audit.emit(
            "orchestration.finished",
            outcome=terminal.outcome.value,
            success=success,
            iterations=run.iterations,
            total_time_ms=total_ms,
            error=terminal.error,
        )
        return OrchestrationResult(
            success=success,
            fix=terminal.fix,
            error=terminal.error,
            total_time_ms=total_ms,
            iterations=run.iterations,
            approach=approach,
            outcome=terminal.outcome,
            agent_results=run.results,
        )

    async def orchestrate_to_recommendation(self, context: AgentContext) -> Optional[FixRecommendation]:
        result = await self.orchestrate(context)
        return result.fix if result.success else None

    async def _run_pipeline(self, context: AgentContext, run: _Run) -> _Terminal:
        run.enter(State.ANALYZING)
        analysis_result = await self.analysis_agent.execute(AnalysisInput(), context)
        run.results.analysis = analysis_result
        self._audit_stage("analysis", analysis_result)
        if not analysis_result.success or analysis_result.data is None:
            return _Terminal(outcome=Outcome.fatal_stage_failure, error=f"Analysis agent failed: {analysis_result.error}")
        analysis = analysis_result.data
        logger.info("Root cause: %s (confidence %g%%)", analysis.root_cause_category.value, analysis.confidence)

        run.enter(State.READING)
        reading_result = await self.code_reading_agent.execute(
            CodeReadingInput(test_file=context.test_file, error_selectors=list(analysis.selectors)), context
        )
        run.results.code_reading = reading_result
        self._audit_stage("code_reading", reading_result)
        if reading_result.success and reading_result.data is not None:
            context.apply_code_reading(reading_result.data)
            logger.info("Fetched %d file(s)", len(reading_result.data.related_files) + 1)
        else:
            logger.warning("Code reading failed, continuing without source: %s", reading_result.error)

        run.enter(State.INVESTIGATING)
        investigation_result = await self.investigation_agent.execute(
            InvestigationInput(analysis=analysis, code_context=reading_result.data), context
        )
        run.results.investigation = investigation_result
        self._audit_stage("investigation", investigation_result)
        if not investigation_result.success or investigation_result.data is None:
            return _Terminal(
                outcome=Outcome.fatal_stage_failure, error=f"Investigation agent failed: {investigation_result.error}"
            )
        investigation = investigation_result.data
        logger.info("Findings: %d, fixable in test code: %s", len(investigation.findings), investigation.is_test_code_fixable)

        while run.iterations < self.config.max_iterations:
            run.iterations += 1
            run.enter(State.GENERATING)
            gen_result = await self.fix_generation_agent.execute(
                FixGenerationInput(analysis=analysis, investigation=investigation, previous_feedback=run.feedback),
                context,
            )
            run.results.fix_generation = gen_result
            self._audit_stage("fix_generation", gen_result, iteration=run.iterations)
            if not gen_result.success or gen_result.data is None:
                logger.warning("Fix generation failed on iteration %d: %s", run.iterations, gen_result.error)
                continue

            fix = gen_result.data
            run.last_fix = fix
            run.last_fix_blocked = False

            run.enter(State.GATING)
            passed = fix.confidence >= self.config.min_confidence
            self.audit.emit(
                "fix.gated", iteration=run.iterations, confidence=fix.confidence, min_confidence=self.config.min_confidence, passed=passed
            )
            if not passed:
                logger.warning("Fix confidence (%g%%) below threshold (%g%%)", fix.confidence, self.config.min_confidence)
                run.enter(State.FEEDBACK)
                run.feedback = f"Confidence too low ({fix.confidence:g}%). Please improve the fix."
                continue

            if not self.config.require_review:
                return _Terminal(outcome=Outcome.unreviewed, fix=FixRecommendation.from_generation(fix))

            run.enter(State.REVIEWING)
            review_result = await self.review_agent.execute(ReviewInput(proposed_fix=fix, analysis=analysis), context)
            run.results.review = review_result
            self._audit_stage("review", review_result, iteration=run.iterations)
            if review_result.success and review_result.data is not None:
                review = review_result.data
                self.audit.emit(
                    "review.completed",
                    iteration=run.iterations,
                    approved=review.approved,
                    issues=[f"[{i.severity.value}] {i.description}" for i in review.issues],
                )
                if review.approved:
                    return _Terminal(outcome=Outcome.approved, fix=FixRecommendation.from_generation(fix))
                run.last_fix_blocked = any(i.severity == ReviewSeverity.CRITICAL for i in review.issues)
                run.enter(State.FEEDBACK)
                run.feedback = format_review_feedback(review.issues)
                logger.warning("Fix not approved. Issues: %d", len(review.issues))
                continue

            # The review call itself failed; fall back to the deterministic old-code check.
            deterministic = check_changes_against_context(fix.changes, context)
            run.enter(State.FEEDBACK)
            if deterministic:
                run.last_fix_blocked = True
                run.feedback = format_review_feedback(deterministic)
            else:
                run.feedback = "Review could not run. Make sure every oldCode is copied exactly from the file."

        return self._exhausted(run)

    def _exhausted(self, run: _Run) -> _Terminal:
        fix = run.last_fix
        if fix is not None and fix.confidence >= self.config.min_confidence and not run.last_fix_blocked:
            logger.warning("Max iterations reached, returning last fix without review approval")
            return _Terminal(outcome=Outcome.degraded_accept, fix=FixRecommendation.from_generation(fix))
        return _Terminal(
            outcome=Outcome.exhausted,
            error=f"Max iterations ({self.config.max_iterations}) reached without valid fix",
        )

    def _audit_stage(self, stage: str, result: Any, **extra: Any) -> None:
        self.audit.emit(
            "agent.completed",
            stage=stage,
            success=result.success,
            error=result.error,
            execution_time_ms=result.execution_time_ms,
            **extra,
        )


def create_orchestrator(
    settings: Any,
    client: CompletionClient,
    *,
    source_fetcher: Optional[SourceFetcher] = None,
    audit: Optional[AuditTrail] = None,
) -> AgentOrchestrator:
    return AgentOrchestrator(
        client,
        OrchestratorConfig.from_settings(settings),
        source_fetcher=source_fetcher,
        agent_config=AgentConfig.from_settings(settings),
        fix_generation_max_tokens=settings.fix_generation_max_tokens,
        audit=audit,
    )

