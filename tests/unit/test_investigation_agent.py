from __future__ import annotations

import asyncio

from triagefix.agents.investigation import InvestigationAgent, InvestigationInput, is_selector_supported, selector_tokens
from triagefix.models import (
    AnalysisOutput,
    CodeReadingOutput,
    DiffFile,
    FindingSeverity,
    FindingType,
    PRDiff,
    RelatedFile,
    RootCauseCategory,
    create_agent_context,
)

ANALYSIS = AnalysisOutput(
    root_cause_category=RootCauseCategory.SELECTOR_MISMATCH,
    confidence=85,
    explanation="submit button test id changed",
    selectors=['[data-testid="submit"]'],
)

CODE = CodeReadingOutput(
    test_file_content="cy.get('[data-testid=\"submit\"]').click();",
    related_files=[RelatedFile(path="src/Form.tsx", content='<button data-testid="submit-order">Pay</button>', relevance="diff")],
)


def _ctx(**kw):
    base = dict(error_message="Expected to find element", test_file="cypress/e2e/pay.cy.ts", test_name="pays")
    base.update(kw)
    return create_agent_context(**base)


def test_selector_tokens() -> None:
    assert selector_tokens('[data-testid="submit-order"]') == ["submit-order"]
    assert selector_tokens("#login .btn-primary") == ["login", "btn-primary"]
    assert selector_tokens("button") == []


def test_is_selector_supported() -> None:
    corpus = '<button data-testid="submit-order">'
    assert is_selector_supported('[data-testid="submit-order"]', corpus, [])
    assert is_selector_supported("#from-analysis", "", ["#from-analysis"])
    assert not is_selector_supported('[data-testid="invented"]', corpus, [])
    assert not is_selector_supported("span", corpus, [])


def test_investigation_parses_and_defaults(scripted_client) -> None:
    client = scripted_client(
        [
            {
                "findings": [
                    {
                        "type": "SELECTOR_CHANGE",
                        "severity": "HIGH",
                        "description": "test id renamed",
                        "evidence": ["diff renames submit to submit-order"],
                        "location": {"file": "src/Form.tsx", "line": 12, "code": "<button>"},
                        "relationToError": "explains missing element",
                    },
                    {"type": "BOGUS", "description": "other"},
                ],
                "recommendedApproach": "update the selector",
            }
        ]
    )
    res = asyncio.run(InvestigationAgent(client).execute(InvestigationInput(analysis=ANALYSIS, code_context=CODE), _ctx()))
    assert res.success
    out = res.data
    assert out.is_test_code_fixable is True
    assert out.confidence == 50
    assert out.primary_finding == out.findings[0]
    assert out.findings[0].type == FindingType.SELECTOR_CHANGE
    assert out.findings[0].location.line == 12
    assert out.findings[1].type == FindingType.OTHER
    assert out.findings[1].severity == FindingSeverity.MEDIUM


def test_investigation_respects_explicit_not_fixable(scripted_client) -> None:
    client = scripted_client([{"findings": [], "isTestCodeFixable": False, "confidence": 30}])
    res = asyncio.run(InvestigationAgent(client).execute(InvestigationInput(analysis=ANALYSIS), _ctx()))
    assert res.success
    assert res.data.is_test_code_fixable is False
    assert res.data.primary_finding is None
    assert res.data.confidence == 30


def test_investigation_drops_replacements_without_evidence(scripted_client) -> None:
    client = scripted_client(
        [
            {
                "selectorsToUpdate": [
                    {"current": '[data-testid="submit"]', "reason": "renamed", "suggestedReplacement": '[data-testid="submit-order"]'},
                    {"current": "#pay", "reason": "guess", "suggestedReplacement": '[data-testid="pay-now"]'},
                    {"current": "", "reason": "empty"},
                ]
            }
        ]
    )
    res = asyncio.run(InvestigationAgent(client).execute(InvestigationInput(analysis=ANALYSIS, code_context=CODE), _ctx()))
    assert res.success
    updates = res.data.selectors_to_update
    assert [u.current for u in updates] == ['[data-testid="submit"]', "#pay"]
    assert updates[0].suggested_replacement == '[data-testid="submit-order"]'
    assert updates[1].suggested_replacement is None
    assert updates[1].reason == "guess"


def test_investigation_accepts_replacements_seen_in_diff(scripted_client) -> None:
    client = scripted_client(
        [{"selectorsToUpdate": [{"current": "#pay", "reason": "renamed", "suggestedReplacement": "#pay-now"}]}]
    )
    ctx = _ctx(pr_diff=PRDiff(files=[DiffFile(filename="src/Pay.tsx", patch='-<b id="pay">\n+<b id="pay-now">')]))
    res = asyncio.run(InvestigationAgent(client).execute(InvestigationInput(analysis=ANALYSIS), ctx))
    assert res.success
    assert res.data.selectors_to_update[0].suggested_replacement == "#pay-now"


def test_investigation_prompt_lists_analysis_and_code(scripted_client) -> None:
    client = scripted_client([{"findings": []}])
    asyncio.run(InvestigationAgent(client).execute(InvestigationInput(analysis=ANALYSIS, code_context=CODE), _ctx()))
    prompt = client.prompt_text(0)
    assert "SELECTOR_MISMATCH" in prompt
    assert '`[data-testid="submit"]`' in prompt
    assert "#### src/Form.tsx" in prompt
