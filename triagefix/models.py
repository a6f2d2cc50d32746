from __future__ import annotations

from enum import Enum
from typing import Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Framework(str, Enum):
    cypress = "cypress"
    webdriverio = "webdriverio"


def framework_label(framework: str | None) -> str:
    if framework == Framework.webdriverio.value:
        return "WebDriverIO"
    if framework == Framework.cypress.value:
        return "Cypress"
    return "unknown"


class Screenshot(BaseModel):
    name: str
    base64_data: Optional[str] = None
    timestamp: Optional[str] = None


class DiffFile(BaseModel):
    filename: str
    status: str = "modified"
    patch: Optional[str] = None


class PRDiff(BaseModel):
    files: List[DiffFile] = Field(default_factory=list)


class AgentContext(BaseModel):
    """
    Per-attempt record of error/test/code facts threaded through every stage.

    Created once by the caller. The only write after creation is
    `apply_code_reading`, done by the orchestrator right after the
    Code-Reading stage and before any later stage reads those fields.
    """

    error_message: str
    test_file: str
    test_name: str
    error_type: Optional[str] = None
    error_selector: Optional[str] = None
    stack_trace: Optional[str] = None
    screenshots: List[Screenshot] = Field(default_factory=list)
    logs: List[str] = Field(default_factory=list)
    pr_diff: Optional[PRDiff] = None
    framework: Optional[str] = None

    # Filled from CodeReadingOutput
    source_file_content: Optional[str] = None
    related_files: Dict[str, str] = Field(default_factory=dict)

    def apply_code_reading(self, output: "CodeReadingOutput") -> None:
        self.source_file_content = output.test_file_content
        self.related_files = {f.path: f.content for f in output.related_files}

    def file_content_for(self, path: str) -> Optional[str]:
        """Best known content of `path`: the test file itself, or a fetched related file."""
        if path == self.test_file and self.source_file_content is not None:
            return self.source_file_content
        if path in self.related_files:
            return self.related_files[path]
        # Model-proposed paths are sometimes relative to a different root.
        for known, content in self.related_files.items():
            if known.endswith("/" + path) or path.endswith("/" + known):
                return content
        if self.source_file_content is not None and (
            self.test_file.endswith("/" + path) or path.endswith("/" + self.test_file)
        ):
            return self.source_file_content
        return None


def create_agent_context(
    *,
    error_message: str,
    test_file: str,
    test_name: str,
    error_type: str | None = None,
    error_selector: str | None = None,
    stack_trace: str | None = None,
    screenshots: List[Screenshot] | None = None,
    logs: List[str] | None = None,
    pr_diff: PRDiff | None = None,
    framework: str | None = None,
) -> AgentContext:
    return AgentContext(
        error_message=error_message,
        test_file=test_file,
        test_name=test_name,
        error_type=error_type,
        error_selector=error_selector,
        stack_trace=stack_trace,
        screenshots=list(screenshots or []),
        logs=list(logs or []),
        pr_diff=pr_diff,
        framework=framework,
    )


T = TypeVar("T")


class AgentResult(BaseModel, Generic[T]):
    """Uniform envelope returned by every agent call. `data` is present iff `success`."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    execution_time_ms: int = 0
    api_calls: int = 0
    tokens_used: Optional[int] = None

    @model_validator(mode="after")
    def _data_iff_success(self) -> "AgentResult[T]":
        if self.success and self.data is None:
            raise ValueError("successful AgentResult requires data")
        if not self.success and self.data is not None:
            raise ValueError("failed AgentResult must not carry data")
        return self


# ---------------------------------------------------------------- analysis


class RootCauseCategory(str, Enum):
    SELECTOR_MISMATCH = "SELECTOR_MISMATCH"
    TIMING_ISSUE = "TIMING_ISSUE"
    STATE_DEPENDENCY = "STATE_DEPENDENCY"
    NETWORK_ISSUE = "NETWORK_ISSUE"
    ELEMENT_VISIBILITY = "ELEMENT_VISIBILITY"
    ASSERTION_MISMATCH = "ASSERTION_MISMATCH"
    DATA_DEPENDENCY = "DATA_DEPENDENCY"
    ENVIRONMENT_ISSUE = "ENVIRONMENT_ISSUE"
    UNKNOWN = "UNKNOWN"


class IssueLocation(str, Enum):
    TEST_CODE = "TEST_CODE"
    APP_CODE = "APP_CODE"
    BOTH = "BOTH"
    UNKNOWN = "UNKNOWN"


class FailurePatterns(BaseModel):
    model_config = ConfigDict(frozen=True)

    has_timeout: bool = False
    has_visibility_issue: bool = False
    has_network_call: bool = False
    has_state_assertion: bool = False
    has_dynamic_content: bool = False
    has_responsive_issue: bool = False


class AnalysisOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    root_cause_category: RootCauseCategory
    contributing_factors: List[RootCauseCategory] = Field(default_factory=list)
    confidence: float = Field(ge=0, le=100)
    explanation: str = ""
    selectors: List[str] = Field(default_factory=list)
    elements: List[str] = Field(default_factory=list)
    issue_location: IssueLocation = IssueLocation.UNKNOWN
    patterns: FailurePatterns = Field(default_factory=FailurePatterns)
    suggested_approach: str = ""


# ---------------------------------------------------------------- code reading


class RelatedFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    content: str
    relevance: str


class CustomCommand(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    file: str
    definition: Optional[str] = None


class PageObject(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    file: str
    selectors: List[str] = Field(default_factory=list)


class CodeReadingOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    test_file_content: str
    related_files: List[RelatedFile] = Field(default_factory=list)
    custom_commands: List[CustomCommand] = Field(default_factory=list)
    page_objects: List[PageObject] = Field(default_factory=list)
    summary: str = ""


# ---------------------------------------------------------------- investigation


class FindingType(str, Enum):
    SELECTOR_CHANGE = "SELECTOR_CHANGE"
    MISSING_ELEMENT = "MISSING_ELEMENT"
    TIMING_GAP = "TIMING_GAP"
    STATE_ISSUE = "STATE_ISSUE"
    CODE_CHANGE = "CODE_CHANGE"
    OTHER = "OTHER"


class FindingSeverity(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class FindingLocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    file: str
    line: Optional[int] = None
    code: Optional[str] = None


class InvestigationFinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: FindingType = FindingType.OTHER
    severity: FindingSeverity = FindingSeverity.MEDIUM
    description: str = ""
    evidence: List[str] = Field(default_factory=list)
    location: Optional[FindingLocation] = None
    relation_to_error: str = ""


class SelectorUpdate(BaseModel):
    model_config = ConfigDict(frozen=True)

    current: str
    reason: str = ""
    suggested_replacement: Optional[str] = None


class InvestigationOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    findings: List[InvestigationFinding] = Field(default_factory=list)
    primary_finding: Optional[InvestigationFinding] = None
    is_test_code_fixable: bool = True
    recommended_approach: str = ""
    selectors_to_update: List[SelectorUpdate] = Field(default_factory=list)
    confidence: float = Field(default=50, ge=0, le=100)


# ---------------------------------------------------------------- fix generation / review


class ChangeType(str, Enum):
    SELECTOR_UPDATE = "SELECTOR_UPDATE"
    WAIT_ADDITION = "WAIT_ADDITION"
    LOGIC_CHANGE = "LOGIC_CHANGE"
    ASSERTION_UPDATE = "ASSERTION_UPDATE"
    OTHER = "OTHER"


class CodeChange(BaseModel):
    """
    A single-location source edit. `old_code` must be a verbatim substring of
    the target file at apply time, or the change is rejected for that file.
    """

    model_config = ConfigDict(frozen=True)

    file: str
    line: int = 0
    old_code: str
    new_code: str
    justification: str = ""
    change_type: ChangeType = ChangeType.OTHER


class FixGenerationOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    changes: List[CodeChange]
    confidence: float = Field(ge=0, le=100)
    summary: str = ""
    reasoning: str = ""
    evidence: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)
    alternatives: Optional[List[str]] = None


class ReviewSeverity(str, Enum):
    CRITICAL = "CRITICAL"
    WARNING = "WARNING"
    SUGGESTION = "SUGGESTION"


class ReviewIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    severity: ReviewSeverity = ReviewSeverity.WARNING
    change_index: int = 0
    description: str = ""
    suggestion: Optional[str] = None


class ReviewOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    approved: bool
    issues: List[ReviewIssue] = Field(default_factory=list)
    assessment: str = ""
    fix_confidence: float = Field(default=50, ge=0, le=100)
    improvements: Optional[List[str]] = None


# ---------------------------------------------------------------- pipeline outputs


class FixRecommendation(BaseModel):
    """Pipeline output contract consumed by the validator and the applier."""

    model_config = ConfigDict(frozen=True)

    confidence: float
    summary: str
    proposed_changes: List[CodeChange] = Field(default_factory=list)
    evidence: List[str] = Field(default_factory=list)
    reasoning: str = ""

    @classmethod
    def from_generation(cls, fix: FixGenerationOutput) -> "FixRecommendation":
        return cls(
            confidence=fix.confidence,
            summary=fix.summary,
            proposed_changes=list(fix.changes),
            evidence=list(fix.evidence),
            reasoning=fix.reasoning,
        )


class ApplyResult(BaseModel):
    success: bool
    modified_files: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    commit_sha: Optional[str] = None
    branch_name: Optional[str] = None
    validation_run_id: Optional[int] = None
    validation_status: Optional[str] = None


class Outcome(str, Enum):
    """Terminal outcomes of one orchestration."""

    approved = "approved"
    unreviewed = "unreviewed"  # review disabled by configuration
    degraded_accept = "degraded_accept"
    exhausted = "exhausted"
    fatal_stage_failure = "fatal_stage_failure"
    timeout = "timeout"


class AgentResults(BaseModel):
    analysis: Optional[AgentResult[AnalysisOutput]] = None
    code_reading: Optional[AgentResult[CodeReadingOutput]] = None
    investigation: Optional[AgentResult[InvestigationOutput]] = None
    fix_generation: Optional[AgentResult[FixGenerationOutput]] = None
    review: Optional[AgentResult[ReviewOutput]] = None


class OrchestrationResult(BaseModel):
    success: bool
    fix: Optional[FixRecommendation] = None
    error: Optional[str] = None
    total_time_ms: int = 0
    iterations: int = 0
    approach: Literal["agentic", "single-shot", "failed"] = "failed"
    outcome: Outcome
    agent_results: AgentResults = Field(default_factory=AgentResults)
