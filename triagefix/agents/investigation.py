from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from triagefix.agents.base import AgentConfig, BaseAgent, as_number, as_str_list, clamp_confidence, coerce_enum
from triagefix.llm.openai_client import CompletionClient
from triagefix.models import (
    AgentContext,
    AnalysisOutput,
    CodeReadingOutput,
    FindingLocation,
    FindingSeverity,
    FindingType,
    InvestigationFinding,
    InvestigationOutput,
    SelectorUpdate,
    framework_label,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvestigationInput:
    analysis: AnalysisOutput
    code_context: Optional[CodeReadingOutput] = None


_SYSTEM_PROMPT = """You investigate failing end-to-end tests by cross-referencing an error analysis with the actual code.

1. Check whether selectors used by the test still exist in the application code and the recent diff.
2. Trace recent changes that could have broken the test.
3. Look for timing gaps between test expectations and application behaviour.
4. Verify the test's assumptions about application state.

Finding types: SELECTOR_CHANGE, MISSING_ELEMENT, TIMING_GAP, STATE_ISSUE, CODE_CHANGE, OTHER.
Only suggest a replacement selector that you can see in the supplied code or diff.

Respond with a single JSON object:
{
  "findings": [
    {
      "type": "<finding type>",
      "severity": "<HIGH|MEDIUM|LOW>",
      "description": "<what was found>",
      "evidence": ["<supporting evidence>"],
      "location": {"file": "<path>", "line": <number>, "code": "<snippet>"},
      "relationToError": "<how this explains the error>"
    }
  ],
  "primaryFinding": <finding object>,
  "isTestCodeFixable": <bool>,
  "recommendedApproach": "<one paragraph>",
  "selectorsToUpdate": [{"current": "<selector>", "reason": "<why>", "suggestedReplacement": "<selector>"}],
  "confidence": <0-100>
}"""


class InvestigationAgent(BaseAgent[InvestigationInput, InvestigationOutput]):
    name = "InvestigationAgent"
    output_model = InvestigationOutput

    def __init__(self, client: Optional[CompletionClient], config: Optional[AgentConfig] = None):
        super().__init__(client, config)

    def system_prompt(self) -> str:
        return _SYSTEM_PROMPT

    def build_user_prompt(self, input: InvestigationInput, context: AgentContext) -> str:
        a = input.analysis
        p = a.patterns
        parts: List[str] = [
            "## Investigation Request",
            "",
            f"**Test framework:** {framework_label(context.framework)}",
            "",
            "### Error Analysis Results",
            f"- **Root Cause Category:** {a.root_cause_category.value}",
            f"- **Analysis Confidence:** {a.confidence:g}%",
            f"- **Issue Location:** {a.issue_location.value}",
            f"- **Explanation:** {a.explanation}",
            "",
            "### Identified Selectors",
        ]
        parts += [f"- `{s}`" for s in a.selectors] or ["- No selectors identified"]
        parts += [
            "",
            "### Detected Patterns",
            f"- Timeout: {p.has_timeout}",
            f"- Visibility Issue: {p.has_visibility_issue}",
            f"- Network Call: {p.has_network_call}",
            f"- State Assertion: {p.has_state_assertion}",
            f"- Dynamic Content: {p.has_dynamic_content}",
            f"- Responsive Issue: {p.has_responsive_issue}",
        ]

        cc = input.code_context
        if cc is not None:
            parts += ["", "### Test File Content", "```javascript", cc.test_file_content[:4000], "```"]
            if cc.related_files:
                parts += ["", "### Related Files"]
                for f in cc.related_files[:3]:
                    parts += ["", f"#### {f.path}", f"Relevance: {f.relevance}", "```", f.content[:1500], "```"]
            if cc.custom_commands:
                prefix = "browser" if context.framework == "webdriverio" else "cy"
                parts += ["", "### Custom Commands"]
                parts += [f"- `{prefix}.{c.name}()` in {c.file}" for c in cc.custom_commands]

        if context.pr_diff and context.pr_diff.files:
            parts += ["", "### Recent Changes (PR Diff)"]
            for f in context.pr_diff.files[:5]:
                parts.append(f"- **{f.filename}** ({f.status})")
                if f.patch:
                    parts += ["```diff", f.patch[:1000], "```"]

        if context.screenshots:
            parts += ["", "### Screenshots", f"{len(context.screenshots)} screenshot(s) attached."]

        parts += [
            "",
            "## Instructions",
            "Identify the findings that explain the failure, pick the primary cause, decide whether",
            "test code can fix it, and list the selectors that need updating.",
            "Respond with the JSON object described in the system prompt.",
        ]
        return "\n".join(parts)

    def parse_response(self, response: str, input: InvestigationInput, context: AgentContext) -> InvestigationOutput:
        data = self.load_json(response)

        raw_findings = data.get("findings")
        findings = [parse_finding(f) for f in raw_findings if isinstance(f, dict)] if isinstance(raw_findings, list) else []
        primary = parse_finding(data["primaryFinding"]) if isinstance(data.get("primaryFinding"), dict) else None
        if primary is None and findings:
            primary = findings[0]

        updates: List[SelectorUpdate] = []
        raw_updates = data.get("selectorsToUpdate")
        for u in raw_updates if isinstance(raw_updates, list) else []:
            if not isinstance(u, dict) or not str(u.get("current") or "").strip():
                continue
            replacement = u.get("suggestedReplacement")
            updates.append(
                SelectorUpdate(
                    current=str(u["current"]),
                    reason=str(u.get("reason") or ""),
                    suggested_replacement=str(replacement) if isinstance(replacement, str) and replacement.strip() else None,
                )
            )

        confidence = as_number(data.get("confidence"))
        return InvestigationOutput(
            findings=findings,
            primary_finding=primary,
            is_test_code_fixable=data.get("isTestCodeFixable") is not False,
            recommended_approach=str(data.get("recommendedApproach") or ""),
            selectors_to_update=filter_unsupported_replacements(updates, input, context),
            confidence=clamp_confidence(confidence) if confidence is not None else 50,
        )


def parse_finding(raw: Dict[str, Any]) -> InvestigationFinding:
    location: Optional[FindingLocation] = None
    loc = raw.get("location")
    if isinstance(loc, dict) and isinstance(loc.get("file"), str) and loc["file"].strip():
        line = as_number(loc.get("line"))
        location = FindingLocation(
            file=loc["file"],
            line=int(line) if line is not None else None,
            code=str(loc["code"]) if isinstance(loc.get("code"), str) else None,
        )
    return InvestigationFinding(
        type=coerce_enum(FindingType, raw.get("type"), FindingType.OTHER),
        severity=coerce_enum(FindingSeverity, raw.get("severity"), FindingSeverity.MEDIUM),
        description=str(raw.get("description") or ""),
        evidence=as_str_list(raw.get("evidence")),
        location=location,
        relation_to_error=str(raw.get("relationToError") or ""),
    )


# ---- evidentiary filter


_ATTR_VALUE = re.compile(r"""=\s*["']?([^"'\]]+)["']?\s*\]""")
_ID_OR_CLASS = re.compile(r"(?<![\w-])[#.]([A-Za-z_][\w-]*)")


def selector_tokens(selector: str) -> List[str]:
    """Identifying parts of a CSS selector: attribute values, ids and class names."""
    tokens = [m.group(1).strip() for m in _ATTR_VALUE.finditer(selector)]
    tokens += [m.group(1) for m in _ID_OR_CLASS.finditer(selector)]
    return [t for t in tokens if t]


def is_selector_supported(selector: str, corpus: str, known_selectors: List[str]) -> bool:
    s = selector.strip()
    if not s:
        return False
    if s in known_selectors or s in corpus:
        return True
    tokens = selector_tokens(s)
    return bool(tokens) and all(t in corpus for t in tokens)


def evidence_corpus(input: InvestigationInput, context: AgentContext) -> str:
    texts: List[str] = []
    if input.code_context is not None:
        texts.append(input.code_context.test_file_content)
        texts += [f.content for f in input.code_context.related_files]
    elif context.source_file_content:
        texts.append(context.source_file_content)
        texts += list(context.related_files.values())
    if context.pr_diff:
        texts += [f.patch for f in context.pr_diff.files if f.patch]
    return "\n".join(texts)


def filter_unsupported_replacements(
    updates: List[SelectorUpdate], input: InvestigationInput, context: AgentContext
) -> List[SelectorUpdate]:
    """Drop suggested replacements that appear nowhere in the fetched code, the diff, or the analysis."""
    corpus = evidence_corpus(input, context)
    known = list(input.analysis.selectors)
    out: List[SelectorUpdate] = []
    for u in updates:
        if u.suggested_replacement and not is_selector_supported(u.suggested_replacement, corpus, known):
            logger.info("Dropping unsupported replacement %r for %r", u.suggested_replacement, u.current)
            u = u.model_copy(update={"suggested_replacement": None})
        out.append(u)
    return out
