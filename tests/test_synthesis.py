from __future__ import annotations

import pytest

from company_research.llm_client import Completion
from company_research.models.research import (
    FindingType,
    PriorityLevel,
    ResearchFinding,
    TemplatePriority,
)
from company_research.services.synthesis import (
    SynthesisGenerator,
    actionable_opportunities,
    confidence_level,
    recommended_next_steps,
    risk_factors,
    templated_summary,
)


def _finding(
    title: str,
    content: str = "Generic observation about the company.",
    *,
    finding_type: FindingType = FindingType.PROBLEM_IDENTIFIED,
    priority: PriorityLevel = PriorityLevel.MEDIUM,
    confidence: float = 0.6,
) -> ResearchFinding:
    return ResearchFinding(
        id=f"f-{title}",
        session_id="s1",
        company_id="c1",
        finding_type=finding_type,
        title=title,
        content=content,
        confidence_score=confidence,
        priority_level=priority,
    )


class FakeCompletion:
    def __init__(self, text: str = "", error: Exception | None = None):
        self.text = text
        self.error = error
        self.calls: list[dict] = []

    async def create(self, **kwargs) -> Completion:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return Completion(text=self.text, model="gpt-test")


def test_templated_summary_lists_top_findings():
    findings = [
        _finding("Flaky deploys", priority=PriorityLevel.HIGH),
        _finding("Minor docs gap", priority=PriorityLevel.LOW),
    ]

    summary = templated_summary("Acme", findings)

    assert summary.startswith("Based on comprehensive research of Acme")
    assert "• Flaky deploys" in summary
    assert "Minor docs gap" not in summary
    assert "identified 2 total insights" in summary


def test_templated_summary_without_top_findings():
    summary = templated_summary("Acme", [_finding("Minor docs gap", priority=PriorityLevel.LOW)])

    assert summary == (
        "Research analysis for Acme completed with 1 findings "
        "across technical, business, and competitive dimensions."
    )


def test_actionable_opportunities_from_top_findings():
    findings = [
        _finding(
            "Legacy billing API",
            "Their billing API integration fails often and the database schema blocks analytics. " * 4,
            priority=PriorityLevel.HIGH,
        ),
        _finding("Breach exposure", "security audit overdue", priority=PriorityLevel.CRITICAL),
        _finding("Low priority", priority=PriorityLevel.LOW),
        _finding("Third", priority=PriorityLevel.HIGH),
        _finding("Fourth", priority=PriorityLevel.HIGH),
    ]

    opportunities = actionable_opportunities(findings)

    assert [o.title for o in opportunities] == [
        "Address Legacy billing API",
        "Address Breach exposure",
        "Address Third",
    ]
    billing, breach, _ = opportunities
    assert billing.estimated_impact == TemplatePriority.MEDIUM
    assert breach.estimated_impact == TemplatePriority.HIGH
    assert billing.description.endswith("...")
    assert len(billing.description) == 203
    assert billing.required_skills[:3] == ["API development", "Database design", "Data analysis"]
    assert "Analytics dashboard" in billing.potential_artifacts
    assert breach.required_skills == ["Security engineering"]
    assert breach.potential_artifacts == ["Security assessment"]


def test_risk_factors_need_every_keyword():
    findings = [
        _finding("a", "A security vulnerability was disclosed last month."),
        _finding("b", "Pages are slow but performance budgets are being added."),
        _finding("c", "There is technical debt in the checkout flow."),
        _finding("d", "Only security is mentioned here."),
        _finding("e", "Another security vulnerability report."),
    ]

    assert risk_factors(findings) == [
        "Security vulnerabilities identified",
        "Performance bottlenecks affecting user experience",
        "Technical debt accumulation",
    ]


def test_recommended_next_steps_depend_on_finding_types():
    only_team = [_finding("Team", finding_type=FindingType.TEAM_INSIGHT)]
    assert recommended_next_steps(only_team) == [
        "Schedule follow-up research to track progress",
        "Establish metrics to measure impact of implemented solutions",
    ]

    mixed = [
        _finding("Problem"),
        _finding("Market", finding_type=FindingType.MARKET_OPPORTUNITY),
    ]
    steps = recommended_next_steps(mixed)
    assert len(steps) == 5
    assert steps[0] == "Prioritize technical challenges by impact and feasibility"
    assert "Validate market opportunities with stakeholder interviews" in steps


def test_confidence_level_is_mean_confidence():
    assert confidence_level([]) == 0.0
    assert confidence_level(
        [_finding("a", confidence=0.4), _finding("b", confidence=0.8)]
    ) == pytest.approx(0.6)


@pytest.mark.asyncio
async def test_generate_groups_findings_under_every_type():
    findings = [
        _finding("Problem"),
        _finding("Funding", finding_type=FindingType.FUNDING_STATUS),
    ]
    generator = SynthesisGenerator(None, model="unused")

    synthesis = await generator.generate("s1", "Acme", findings)

    assert set(synthesis.key_findings) == set(FindingType)
    assert [f.title for f in synthesis.key_findings[FindingType.PROBLEM_IDENTIFIED]] == ["Problem"]
    assert synthesis.key_findings[FindingType.TECH_TREND] == []
    assert synthesis.session_id == "s1"
    assert synthesis.executive_summary.startswith("Research analysis for Acme")


@pytest.mark.asyncio
async def test_executive_summary_uses_completion_client():
    completion = FakeCompletion(text="  Acme should fix its deploy pipeline first.  ")
    generator = SynthesisGenerator(completion, model="gpt-test")
    findings = [_finding("Flaky deploys", priority=PriorityLevel.HIGH)]

    summary = await generator.executive_summary("Acme", findings)

    assert summary == "Acme should fix its deploy pipeline first."
    call = completion.calls[0]
    assert call["model"] == "gpt-test"
    assert "[high] Flaky deploys" in call["prompt"]


@pytest.mark.asyncio
async def test_executive_summary_falls_back_when_client_fails():
    generator = SynthesisGenerator(FakeCompletion(error=RuntimeError("rate limited")), model="gpt-test")
    findings = [_finding("Flaky deploys", priority=PriorityLevel.HIGH)]

    summary = await generator.executive_summary("Acme", findings)

    assert summary == templated_summary("Acme", findings)


@pytest.mark.asyncio
async def test_executive_summary_skips_client_without_findings():
    completion = FakeCompletion(text="should not be used")
    generator = SynthesisGenerator(completion, model="gpt-test")

    summary = await generator.executive_summary("Acme", [])

    assert completion.calls == []
    assert "completed with 0 findings" in summary
