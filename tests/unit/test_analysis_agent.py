from __future__ import annotations

import asyncio

from triagefix.agents.analysis import AnalysisAgent, AnalysisInput
from triagefix.models import DiffFile, IssueLocation, PRDiff, RootCauseCategory, create_agent_context


def _ctx(**kw):
    base = dict(
        error_message="Timed out retrying after 4000ms: Expected to find element: [data-testid=\"submit\"]",
        test_file="cypress/e2e/checkout.cy.ts",
        test_name="completes checkout",
        framework="cypress",
    )
    base.update(kw)
    return create_agent_context(**base)


def test_analysis_parses_full_response(scripted_client) -> None:
    client = scripted_client(
        [
            "Analysis follows.\n"
            '{"rootCauseCategory": "selector_mismatch", "contributingFactors": ["TIMING_ISSUE", "NOT_A_CATEGORY"],'
            ' "confidence": 85, "explanation": "button renamed", "selectors": ["[data-testid=\\"submit\\"]"],'
            ' "elements": ["submit button"], "issueLocation": "TEST_CODE",'
            ' "patterns": {"hasTimeout": true, "hasVisibilityIssue": false}, "suggestedApproach": "update selector"}'
        ]
    )
    res = asyncio.run(AnalysisAgent(client).execute(AnalysisInput(), _ctx()))
    assert res.success
    out = res.data
    assert out.root_cause_category == RootCauseCategory.SELECTOR_MISMATCH
    assert out.contributing_factors == [RootCauseCategory.TIMING_ISSUE]
    assert out.confidence == 85
    assert out.issue_location == IssueLocation.TEST_CODE
    assert out.patterns.has_timeout is True
    assert out.patterns.has_network_call is False
    assert out.selectors == ['[data-testid="submit"]']


def test_analysis_defaults_optional_fields_and_clamps_confidence(scripted_client) -> None:
    client = scripted_client([{"rootCauseCategory": "TIMING_ISSUE", "confidence": 140}])
    res = asyncio.run(AnalysisAgent(client).execute(AnalysisInput(), _ctx()))
    assert res.success
    assert res.data.confidence == 100
    assert res.data.selectors == []
    assert res.data.issue_location == IssueLocation.UNKNOWN
    assert res.data.patterns.has_timeout is False


def test_analysis_rejects_missing_category(scripted_client) -> None:
    client = scripted_client([{"confidence": 90, "explanation": "x"}])
    res = asyncio.run(AnalysisAgent(client).execute(AnalysisInput(), _ctx()))
    assert res.success is False
    assert "rootCauseCategory" in (res.error or "")


def test_analysis_rejects_unknown_category(scripted_client) -> None:
    client = scripted_client([{"rootCauseCategory": "GREMLINS", "confidence": 90}])
    res = asyncio.run(AnalysisAgent(client).execute(AnalysisInput(), _ctx()))
    assert res.success is False


def test_analysis_rejects_non_numeric_confidence(scripted_client) -> None:
    client = scripted_client([{"rootCauseCategory": "TIMING_ISSUE", "confidence": "high"}])
    res = asyncio.run(AnalysisAgent(client).execute(AnalysisInput(), _ctx()))
    assert res.success is False
    assert "confidence" in (res.error or "")


def test_analysis_rejects_non_json(scripted_client) -> None:
    client = scripted_client(["I could not decide."])
    res = asyncio.run(AnalysisAgent(client).execute(AnalysisInput(), _ctx()))
    assert res.success is False
    assert "no JSON object" in (res.error or "")


def test_analysis_prompt_includes_context(scripted_client) -> None:
    client = scripted_client([{"rootCauseCategory": "UNKNOWN", "confidence": 10}])
    ctx = _ctx(
        stack_trace="at Context.<anonymous> (checkout.cy.ts:12:8)",
        logs=["GET /api/cart 200"],
        pr_diff=PRDiff(files=[DiffFile(filename="src/Checkout.tsx", status="modified")]),
        framework="webdriverio",
    )
    asyncio.run(AnalysisAgent(client).execute(AnalysisInput(additional_context="flaky on CI"), ctx))
    prompt = client.prompt_text(0)
    assert "cypress/e2e/checkout.cy.ts" in prompt
    assert "WebDriverIO" in prompt
    assert "checkout.cy.ts:12:8" in prompt
    assert "GET /api/cart 200" in prompt
    assert "src/Checkout.tsx (modified)" in prompt
    assert "flaky on CI" in prompt
