from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional

from triagefix.agents.base import AgentConfig, BaseAgent, as_number, as_str_list, clamp_confidence, coerce_enum, with_max_tokens
from triagefix.errors import AgentParseError
from triagefix.llm.openai_client import CompletionClient
from triagefix.models import (
    AgentContext,
    AnalysisOutput,
    ChangeType,
    CodeChange,
    FixGenerationOutput,
    InvestigationOutput,
    framework_label,
)


@dataclass(frozen=True)
class FixGenerationInput:
    analysis: AnalysisOutput
    investigation: InvestigationOutput
    # "[SEVERITY] description" lines from the previous review, or the confidence-gate note.
    previous_feedback: Optional[str] = None


_SYSTEM_PROMPT = """You write minimal, targeted fixes for failing end-to-end tests (Cypress or WebDriverIO).

Rules:
- Change only test code.
- "oldCode" must be copied EXACTLY from the supplied file content, including whitespace.
- Only use selectors that appear in the supplied code, the diff, or the investigation.
- Prefer one small change over many.

Change types: SELECTOR_UPDATE, WAIT_ADDITION, LOGIC_CHANGE, ASSERTION_UPDATE, OTHER.

Respond with a single JSON object:
{
  "changes": [
    {
      "file": "<path>",
      "line": <line number>,
      "oldCode": "<exact code to replace>",
      "newCode": "<replacement>",
      "justification": "<why>",
      "changeType": "<change type>"
    }
  ],
  "confidence": <0-100>,
  "summary": "<one line>",
  "reasoning": "<why this fixes the failure>",
  "evidence": ["<facts that support the fix>"],
  "risks": ["<what could go wrong>"],
  "alternatives": ["<other approaches considered>"]
}"""


class FixGenerationAgent(BaseAgent[FixGenerationInput, FixGenerationOutput]):
    """
    Proposes concrete code changes from the analysis and investigation.

    A response with no changes, or with a change lacking file/oldCode/newCode,
    is a parse failure so the orchestrator can retry with feedback.
    """

    name = "FixGenerationAgent"
    output_model = FixGenerationOutput

    def __init__(self, client: Optional[CompletionClient], config: Optional[AgentConfig] = None, *, max_tokens: int = 6000):
        super().__init__(client, with_max_tokens(config, max_tokens))

    def system_prompt(self) -> str:
        return _SYSTEM_PROMPT

    def build_user_prompt(self, input: FixGenerationInput, context: AgentContext) -> str:
        a, inv = input.analysis, input.investigation
        parts: List[str] = [
            "## Fix Generation Request",
            "",
            "### Test Information",
            f"- **File:** {context.test_file}",
            f"- **Test Name:** {context.test_name}",
            f"- **Test framework:** {framework_label(context.framework)}",
            "",
            "### Analysis Summary",
            f"- **Root Cause:** {a.root_cause_category.value}",
            f"- **Confidence:** {a.confidence:g}%",
            f"- **Explanation:** {a.explanation}",
            f"- **Suggested Approach:** {a.suggested_approach}",
            "",
            "### Investigation Findings",
            f"- **Primary Finding:** {inv.primary_finding.description if inv.primary_finding else 'None'}",
            f"- **Is Test Code Fixable:** {inv.is_test_code_fixable}",
            f"- **Recommended Approach:** {inv.recommended_approach}",
        ]
        if inv.selectors_to_update:
            parts += ["", "### Selectors to Update"]
            for s in inv.selectors_to_update:
                parts += [f"- Current: `{s.current}`", f"  Reason: {s.reason}"]
                if s.suggested_replacement:
                    parts.append(f"  Suggested: `{s.suggested_replacement}`")

        parts += ["", "### Error Message", "```", context.error_message, "```"]
        if context.source_file_content:
            parts += ["", "### Test File Content", "```javascript", context.source_file_content, "```"]
        if input.previous_feedback:
            parts += [
                "",
                "### Previous Review Feedback",
                "The previous fix attempt was rejected. Address these issues:",
                "```",
                input.previous_feedback,
                "```",
            ]
        parts += [
            "",
            "## Instructions",
            "1. Generate the code changes the analysis and investigation call for.",
            "2. Make sure oldCode matches the test file exactly.",
            "3. Keep changes minimal and justify each one.",
            "",
            "Respond with the JSON object described in the system prompt.",
        ]
        return "\n".join(parts)

    def parse_response(self, response: str, input: FixGenerationInput, context: AgentContext) -> FixGenerationOutput:
        data = self.load_json(response)

        raw_changes = data.get("changes")
        if not isinstance(raw_changes, list) or not raw_changes:
            raise AgentParseError(self.name, "no changes in response")
        changes = [self._parse_change(i, c) for i, c in enumerate(raw_changes)]

        confidence = as_number(data.get("confidence"))
        alternatives = data.get("alternatives")
        return FixGenerationOutput(
            changes=changes,
            confidence=clamp_confidence(confidence) if confidence is not None else 50,
            summary=str(data.get("summary") or ""),
            reasoning=str(data.get("reasoning") or ""),
            evidence=as_str_list(data.get("evidence")),
            risks=as_str_list(data.get("risks")),
            alternatives=as_str_list(alternatives) if isinstance(alternatives, list) else None,
        )

    def _parse_change(self, index: int, raw: Any) -> CodeChange:
        if not isinstance(raw, dict):
            raise AgentParseError(self.name, f"change {index} is not an object")
        file = raw.get("file")
        old_code = raw.get("oldCode")
        new_code = raw.get("newCode")
        if not isinstance(file, str) or not file.strip():
            raise AgentParseError(self.name, f"change {index} is missing file")
        if not isinstance(old_code, str) or not old_code:
            raise AgentParseError(self.name, f"change {index} is missing oldCode")
        # An empty string is a deletion; only a missing value is rejected.
        if not isinstance(new_code, str):
            raise AgentParseError(self.name, f"change {index} is missing newCode")
        line = as_number(raw.get("line"))
        return CodeChange(
            file=file.strip(),
            line=int(line) if line is not None else 0,
            old_code=old_code,
            new_code=new_code,
            justification=str(raw.get("justification") or ""),
            change_type=coerce_enum(ChangeType, raw.get("changeType"), ChangeType.OTHER),
        )
