from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from triagefix.agents.base import AgentConfig, BaseAgent, as_number, as_str_list, clamp_confidence, coerce_enum
from triagefix.errors import AgentParseError
from triagefix.llm.openai_client import CompletionClient
from triagefix.models import (
    AgentContext,
    AnalysisOutput,
    FailurePatterns,
    IssueLocation,
    RootCauseCategory,
    framework_label,
)


@dataclass(frozen=True)
class AnalysisInput:
    additional_context: Optional[str] = None


_SYSTEM_PROMPT = """You are an expert analyst of failing end-to-end browser tests (Cypress or WebDriverIO).
Identify the root cause of the failure as precisely as the evidence allows.

Root cause categories:
- SELECTOR_MISMATCH: selector no longer matches (renamed class/id/data attribute, element moved or removed)
- TIMING_ISSUE: race with the application, missing waits, animations, slow requests
- STATE_DEPENDENCY: required application state (login, seed data, prior test) is missing
- NETWORK_ISSUE: failed or slow API calls, unexpected responses
- ELEMENT_VISIBILITY: element exists but is hidden, covered, or outside the viewport
- ASSERTION_MISMATCH: expected value or assertion method is wrong
- DATA_DEPENDENCY: test relies on data that changed or is absent
- ENVIRONMENT_ISSUE: the environment, not the test or the app, is at fault
- UNKNOWN: not determinable from the evidence

Respond with a single JSON object:
{
  "rootCauseCategory": "<category>",
  "contributingFactors": ["<category>"],
  "confidence": <0-100>,
  "explanation": "<explanation>",
  "selectors": ["<selectors seen in the error>"],
  "elements": ["<elements mentioned>"],
  "issueLocation": "<TEST_CODE|APP_CODE|BOTH|UNKNOWN>",
  "patterns": {
    "hasTimeout": <bool>, "hasVisibilityIssue": <bool>, "hasNetworkCall": <bool>,
    "hasStateAssertion": <bool>, "hasDynamicContent": <bool>, "hasResponsiveIssue": <bool>
  },
  "suggestedApproach": "<one sentence>"
}"""


class AnalysisAgent(BaseAgent[AnalysisInput, AnalysisOutput]):
    name = "AnalysisAgent"
    output_model = AnalysisOutput

    def __init__(self, client: Optional[CompletionClient], config: Optional[AgentConfig] = None):
        super().__init__(client, config)

    def system_prompt(self) -> str:
        return _SYSTEM_PROMPT

    def build_user_prompt(self, input: AnalysisInput, context: AgentContext) -> str:
        parts: List[str] = [
            "## Error Analysis Request",
            "",
            "### Test Information",
            f"- **Test File:** {context.test_file}",
            f"- **Test Name:** {context.test_name}",
            f"- **Test framework:** {framework_label(context.framework)}",
        ]
        if context.error_type:
            parts.append(f"- **Error Type:** {context.error_type}")
        if context.error_selector:
            parts.append(f"- **Failed Selector:** {context.error_selector}")
        parts += ["", "### Error Message", "```", context.error_message, "```"]

        if context.stack_trace:
            parts += ["", "### Stack Trace", "```", context.stack_trace[:2000], "```"]
        if context.logs:
            parts += ["", "### Relevant Logs", "```", "\n".join(context.logs)[:3000], "```"]
        if context.pr_diff and context.pr_diff.files:
            parts += ["", "### Recent Changes (PR Diff)"]
            parts += [f"- {f.filename} ({f.status})" for f in context.pr_diff.files]
        if input.additional_context:
            parts += ["", "### Additional Context", input.additional_context]
        if context.screenshots:
            parts += ["", "### Screenshots", f"{len(context.screenshots)} screenshot(s) attached; use them for visual cues."]

        parts += [
            "",
            "## Instructions",
            "Analyze the evidence above and answer with the JSON object described in the system prompt.",
            "Name the problematic selectors explicitly.",
        ]
        return "\n".join(parts)

    def parse_response(self, response: str, input: AnalysisInput, context: AgentContext) -> AnalysisOutput:
        data = self.load_json(response)

        raw_category = data.get("rootCauseCategory")
        if not isinstance(raw_category, str) or not raw_category.strip():
            raise AgentParseError(self.name, "missing rootCauseCategory")
        try:
            category = RootCauseCategory(raw_category.strip().upper())
        except ValueError as e:
            raise AgentParseError(self.name, f"unknown rootCauseCategory {raw_category!r}") from e

        confidence = as_number(data.get("confidence"))
        if confidence is None:
            raise AgentParseError(self.name, "missing numeric confidence")

        factors: List[RootCauseCategory] = []
        for f in as_str_list(data.get("contributingFactors")):
            try:
                factors.append(RootCauseCategory(f.strip().upper()))
            except ValueError:
                continue

        return AnalysisOutput(
            root_cause_category=category,
            contributing_factors=factors,
            confidence=clamp_confidence(confidence),
            explanation=str(data.get("explanation") or ""),
            selectors=as_str_list(data.get("selectors")),
            elements=as_str_list(data.get("elements")),
            issue_location=coerce_enum(IssueLocation, data.get("issueLocation"), IssueLocation.UNKNOWN),
            patterns=_parse_patterns(data.get("patterns")),
            suggested_approach=str(data.get("suggestedApproach") or ""),
        )


def _parse_patterns(raw: Any) -> FailurePatterns:
    p: Dict[str, Any] = raw if isinstance(raw, dict) else {}
    return FailurePatterns(
        has_timeout=bool(p.get("hasTimeout")),
        has_visibility_issue=bool(p.get("hasVisibilityIssue")),
        has_network_call=bool(p.get("hasNetworkCall")),
        has_state_assertion=bool(p.get("hasStateAssertion")),
        has_dynamic_content=bool(p.get("hasDynamicContent")),
        has_responsive_issue=bool(p.get("hasResponsiveIssue")),
    )
