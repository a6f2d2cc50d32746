from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional

from triagefix.agents.base import AgentConfig, BaseAgent, as_number, as_str_list, clamp_confidence, coerce_enum
from triagefix.llm.openai_client import CompletionClient
from triagefix.models import (
    AgentContext,
    AnalysisOutput,
    CodeChange,
    FixGenerationOutput,
    ReviewIssue,
    ReviewOutput,
    ReviewSeverity,
)


@dataclass(frozen=True)
class ReviewInput:
    proposed_fix: FixGenerationOutput
    analysis: AnalysisOutput


_SYSTEM_PROMPT = """You review proposed fixes for failing end-to-end tests before they are committed.

CRITICAL issues (must fix):
- oldCode does not match the file content exactly
- syntax errors in newCode
- the fix does not address the root cause
- the fix could break other tests

WARNING issues (should fix):
- fragile selector choice
- fragile timing assumptions
- hardcoded values

SUGGESTION issues (nice to have):
- style and readability

Respond with a single JSON object:
{
  "approved": <true only if there are no CRITICAL issues>,
  "issues": [
    {"severity": "<CRITICAL|WARNING|SUGGESTION>", "changeIndex": <index>, "description": "<problem>", "suggestion": "<how to fix>"}
  ],
  "assessment": "<overall assessment>",
  "fixConfidence": <0-100>,
  "improvements": ["<optional improvement>"]
}"""


def derive_approval(issues: List[ReviewIssue], model_approved: Any) -> bool:
    """
    Effective approval of a review.

    Any CRITICAL issue rejects, whatever the model said. Otherwise only an
    explicit `false` from the model rejects; a missing value approves.
    """
    if any(i.severity == ReviewSeverity.CRITICAL for i in issues):
        return False
    return model_approved is not False


def _missing_old_code(index: int, change: CodeChange) -> ReviewIssue:
    return ReviewIssue(
        severity=ReviewSeverity.CRITICAL,
        change_index=index,
        description=f"oldCode not found in file. The code to replace doesn't exist in {change.file}",
        suggestion="Verify the exact code content including whitespace and indentation",
    )


def validate_old_code_exists(changes: List[CodeChange], file_content: str) -> List[ReviewIssue]:
    """One CRITICAL issue per change whose old_code is not a literal substring of file_content."""
    return [_missing_old_code(i, c) for i, c in enumerate(changes) if c.old_code not in file_content]


def check_changes_against_context(changes: List[CodeChange], context: AgentContext) -> List[ReviewIssue]:
    """validate_old_code_exists per target file, for files whose content is known."""
    issues: List[ReviewIssue] = []
    for i, c in enumerate(changes):
        content = context.file_content_for(c.file)
        if content is not None and c.old_code not in content:
            issues.append(_missing_old_code(i, c))
    return issues


def format_review_feedback(issues: List[ReviewIssue]) -> str:
    return "\n".join(f"[{i.severity.value}] {i.description}" for i in issues)


class ReviewAgent(BaseAgent[ReviewInput, ReviewOutput]):
    name = "ReviewAgent"
    output_model = ReviewOutput

    def __init__(self, client: Optional[CompletionClient], config: Optional[AgentConfig] = None):
        super().__init__(client, config)

    def system_prompt(self) -> str:
        return _SYSTEM_PROMPT

    def build_user_prompt(self, input: ReviewInput, context: AgentContext) -> str:
        fix = input.proposed_fix
        parts: List[str] = [
            "## Fix Review Request",
            "",
            "### Root Cause Being Fixed",
            f"- **Category:** {input.analysis.root_cause_category.value}",
            f"- **Explanation:** {input.analysis.explanation}",
            "",
            "### Proposed Fix",
            f"- **Summary:** {fix.summary}",
            f"- **Confidence:** {fix.confidence:g}%",
            f"- **Reasoning:** {fix.reasoning}",
            "",
            "### Code Changes",
        ]
        for i, c in enumerate(fix.changes):
            parts += [
                "",
                f"#### Change {i}: {c.file}",
                f"Line: {c.line}",
                f"Type: {c.change_type.value}",
                f"Justification: {c.justification}",
                "",
                "**Old Code:**",
                "```",
                c.old_code,
                "```",
                "",
                "**New Code:**",
                "```",
                c.new_code,
                "```",
            ]

        if context.source_file_content:
            parts += ["", "### Original File Content (for verification)", "```javascript", context.source_file_content, "```"]
        for path in sorted({c.file for c in fix.changes}):
            content = context.file_content_for(path)
            if content is not None and content != context.source_file_content:
                parts += ["", f"### Original Content of {path}", "```", content, "```"]

        if fix.risks:
            parts += ["", "### Identified Risks"] + [f"- {r}" for r in fix.risks]

        parts += [
            "",
            "## Review Instructions",
            "1. Verify each oldCode appears exactly in the file.",
            "2. Check newCode is syntactically valid.",
            "3. Verify the fix addresses the root cause and look for side effects.",
            "",
            "Respond with the JSON object described in the system prompt.",
        ]
        return "\n".join(parts)

    def parse_response(self, response: str, input: ReviewInput, context: AgentContext) -> ReviewOutput:
        data = self.load_json(response)

        issues: List[ReviewIssue] = []
        raw_issues = data.get("issues")
        for raw in raw_issues if isinstance(raw_issues, list) else []:
            if not isinstance(raw, dict):
                continue
            index = as_number(raw.get("changeIndex"))
            suggestion = raw.get("suggestion")
            issues.append(
                ReviewIssue(
                    severity=coerce_enum(ReviewSeverity, raw.get("severity"), ReviewSeverity.WARNING),
                    change_index=int(index) if index is not None else 0,
                    description=str(raw.get("description") or ""),
                    suggestion=str(suggestion) if isinstance(suggestion, str) else None,
                )
            )
        issues += check_changes_against_context(input.proposed_fix.changes, context)

        confidence = as_number(data.get("fixConfidence"))
        improvements = data.get("improvements")
        return ReviewOutput(
            approved=derive_approval(issues, data.get("approved")),
            issues=issues,
            assessment=str(data.get("assessment") or ""),
            fix_confidence=clamp_confidence(confidence) if confidence is not None else 50,
            improvements=as_str_list(improvements) if isinstance(improvements, list) else None,
        )
