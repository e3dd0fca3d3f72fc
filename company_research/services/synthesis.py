"""Roll a session's findings up into an executive synthesis."""
from __future__ import annotations

import time

from loguru import logger

from company_research.llm_client import CompletionAdapter, get_synthesis_model
from company_research.models.research import (
    ActionableOpportunity,
    FindingType,
    PriorityLevel,
    ResearchFinding,
    ResearchSynthesis,
    TemplatePriority,
)
from company_research.services import logger as log_service
from company_research.services.prompt_store import render_prompt

MAX_SUMMARY_POINTS = 5
MAX_OPPORTUNITIES = 3
MAX_SKILLS = 5
MAX_ARTIFACTS = 3
MAX_RISKS = 5
MAX_NEXT_STEPS = 5

_TOP_PRIORITIES = (PriorityLevel.HIGH, PriorityLevel.CRITICAL)

SKILL_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("api", "integration"), "API development"),
    (("database", "sql"), "Database design"),
    (("frontend", "ui"), "Frontend development"),
    (("backend", "server"), "Backend development"),
    (("cloud", "aws"), "Cloud architecture"),
    (("security", "auth"), "Security engineering"),
    (("data", "analytics"), "Data analysis"),
    (("ml", "ai"), "Machine learning"),
    (("market", "competitive"), "Market research"),
    (("strategy", "business"), "Business strategy"),
    (("product", "roadmap"), "Product management"),
    (("sales", "marketing"), "Go-to-market"),
)

ARTIFACT_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("dashboard", "analytics"), "Analytics dashboard"),
    (("api", "integration"), "API integration tool"),
    (("documentation", "guide"), "Technical documentation"),
    (("automation", "script"), "Automation scripts"),
    (("security", "audit"), "Security assessment"),
    (("performance", "optimization"), "Performance analysis"),
    (("market", "competitive"), "Market analysis report"),
    (("strategy", "roadmap"), "Strategic roadmap"),
)

# Every keyword in a group must appear.
RISK_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("security", "vulnerability"), "Security vulnerabilities identified"),
    (("performance", "slow"), "Performance bottlenecks affecting user experience"),
    (("competitive", "threat"), "Competitive pressure increasing"),
    (("technical debt",), "Technical debt accumulation"),
    (("compliance", "regulation"), "Regulatory compliance challenges"),
)


def _match_any(text: str, rules, limit: int) -> list[str]:
    return [label for keywords, label in rules if any(k in text for k in keywords)][:limit]


def top_findings(findings: list[ResearchFinding]) -> list[ResearchFinding]:
    return [f for f in findings if f.priority_level in _TOP_PRIORITIES]


def group_findings(findings: list[ResearchFinding]) -> dict[FindingType, list[ResearchFinding]]:
    grouped: dict[FindingType, list[ResearchFinding]] = {t: [] for t in FindingType}
    for finding in findings:
        grouped[finding.finding_type].append(finding)
    return grouped


def templated_summary(company_name: str, findings: list[ResearchFinding]) -> str:
    top = top_findings(findings)[:MAX_SUMMARY_POINTS]
    if not top:
        return (
            f"Research analysis for {company_name} completed with {len(findings)} findings "
            "across technical, business, and competitive dimensions."
        )
    points = "\n".join(f"• {f.title}" for f in top)
    return (
        f"Based on comprehensive research of {company_name}, key findings include:\n\n"
        f"{points}\n\n"
        f"This analysis identified {len(findings)} total insights across technical challenges, "
        "business opportunities, and competitive positioning."
    )


def infer_required_skills(finding: ResearchFinding) -> list[str]:
    return _match_any(finding.content.lower(), SKILL_RULES, MAX_SKILLS)


def suggest_artifacts(finding: ResearchFinding) -> list[str]:
    return _match_any(finding.content.lower(), ARTIFACT_RULES, MAX_ARTIFACTS)


def actionable_opportunities(findings: list[ResearchFinding]) -> list[ActionableOpportunity]:
    return [
        ActionableOpportunity(
            title=f"Address {f.title}",
            description=f.content[:200] + "...",
            estimated_impact=(
                TemplatePriority.HIGH
                if f.priority_level == PriorityLevel.CRITICAL
                else TemplatePriority.MEDIUM
            ),
            required_skills=infer_required_skills(f),
            potential_artifacts=suggest_artifacts(f),
        )
        for f in top_findings(findings)[:MAX_OPPORTUNITIES]
    ]


def risk_factors(findings: list[ResearchFinding]) -> list[str]:
    risks: list[str] = []
    for finding in findings:
        content = finding.content.lower()
        for keywords, label in RISK_RULES:
            if all(k in content for k in keywords) and label not in risks:
                risks.append(label)
    return risks[:MAX_RISKS]


def recommended_next_steps(findings: list[ResearchFinding]) -> list[str]:
    steps: list[str] = []
    if any(f.finding_type == FindingType.PROBLEM_IDENTIFIED for f in findings):
        steps.append("Prioritize technical challenges by impact and feasibility")
        steps.append("Develop proof-of-concept solutions for high-impact problems")
    if any(f.finding_type == FindingType.MARKET_OPPORTUNITY for f in findings):
        steps.append("Validate market opportunities with stakeholder interviews")
        steps.append("Create business case for identified opportunities")
    steps.append("Schedule follow-up research to track progress")
    steps.append("Establish metrics to measure impact of implemented solutions")
    return steps[:MAX_NEXT_STEPS]


def confidence_level(findings: list[ResearchFinding]) -> float:
    if not findings:
        return 0.0
    return sum(f.confidence_score for f in findings) / len(findings)


class SynthesisGenerator:
    def __init__(self, completion: CompletionAdapter | None, *, model: str | None = None):
        self.completion = completion
        self.model = model or get_synthesis_model()

    async def generate(
        self, session_id: str, company_name: str, findings: list[ResearchFinding]
    ) -> ResearchSynthesis:
        return ResearchSynthesis(
            session_id=session_id,
            company_name=company_name,
            executive_summary=await self.executive_summary(company_name, findings),
            key_findings=group_findings(findings),
            actionable_opportunities=actionable_opportunities(findings),
            risk_factors=risk_factors(findings),
            recommended_next_steps=recommended_next_steps(findings),
            confidence_level=confidence_level(findings),
        )

    async def executive_summary(self, company_name: str, findings: list[ResearchFinding]) -> str:
        if self.completion is None or not findings:
            return templated_summary(company_name, findings)

        ranked = top_findings(findings) or findings
        finding_lines = "\n".join(
            f"- [{f.priority_level.value}] {f.title}: {f.content[:200]}" for f in ranked[:10]
        )
        t0 = time.monotonic()
        try:
            completion = await self.completion.create(
                model=self.model,
                system=render_prompt("synthesis.system_prompt"),
                prompt=render_prompt(
                    "synthesis.user_prompt",
                    company_name=company_name,
                    finding_count=len(findings),
                    finding_lines=finding_lines,
                ),
                max_tokens=600,
            )
        except Exception as exc:
            log_service.log_llm_call(
                model=self.model,
                caller="synthesis",
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc),
            )
            logger.warning(f"Executive summary generation failed, using template: {exc}")
            return templated_summary(company_name, findings)

        log_service.log_llm_call(
            model=completion.model,
            caller="synthesis",
            input_tokens=completion.usage.input_tokens,
            output_tokens=completion.usage.output_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        summary = completion.text.strip()
        return summary or templated_summary(company_name, findings)
