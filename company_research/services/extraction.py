"""Turn one query's research content into structured findings.

The completion service is tried first; when it is missing, fails, or answers
with something that is not a JSON object, a deterministic rule-based
extractor takes over. Both paths build findings through ``_build_finding``
so the shape is identical.
"""
from __future__ import annotations

import json
import re
import time
import uuid
from typing import Any

from loguru import logger

from company_research.config import settings
from company_research.errors import ExtractionError
from company_research.llm_client import CompletionAdapter, get_model
from company_research.models.research import (
    FindingType,
    PriorityLevel,
    QueryTemplate,
    ResearchFinding,
    ResearchResult,
    TemplateCategory,
    TemplatePriority,
)
from company_research.services import logger as log_service
from company_research.services.prompt_store import render_prompt
from company_research.tools import web_utils

LLM_METHOD = "llm"
RULE_BASED_METHOD = "rule_based"

MIN_SECTION_LENGTH = 200
MIN_PARAGRAPH_LENGTH = 300
MAX_TITLE_LENGTH = 80
MAX_TAGS = 10
DEFAULT_TITLE = "Research Finding"

CATEGORY_FINDING_TYPES: dict[TemplateCategory, FindingType] = {
    TemplateCategory.TECHNICAL: FindingType.PROBLEM_IDENTIFIED,
    TemplateCategory.BUSINESS: FindingType.MARKET_OPPORTUNITY,
    TemplateCategory.MARKET: FindingType.MARKET_OPPORTUNITY,
    TemplateCategory.TEAM: FindingType.TEAM_INSIGHT,
    TemplateCategory.COMPETITIVE: FindingType.COMPETITIVE_INSIGHT,
    TemplateCategory.FUNDING: FindingType.FUNDING_STATUS,
}

HIGH_PRIORITY_KEYWORDS = ("urgent", "critical", "major", "significant", "severe")
MEDIUM_PRIORITY_KEYWORDS = ("important", "notable", "relevant", "moderate")


TECH_TERMS = (
    r"Python", r"JavaScript", r"TypeScript", r"React", r"Node\.js", r"Rust", r"Java",
    r"AWS", r"GCP", r"Azure", r"Docker", r"Kubernetes", r"API", r"ML", r"AI", r"LLM",
    r"blockchain", r"database", r"SQL", r"NoSQL", r"Redis", r"MongoDB", r"PostgreSQL",
    r"MySQL", r"GraphQL", r"REST", r"microservices", r"serverless", r"DevOps", r"CI/CD",
    r"Git", r"GitHub", r"GitLab", r"Jenkins", r"Terraform", r"Ansible", r"monitoring",
    r"logging", r"security", r"OAuth", r"JWT", r"HTTPS", r"SSL", r"TLS", r"encryption",
    r"performance", r"scalability", r"load\s+balancing", r"caching", r"CDN", r"cloud",
    r"infrastructure", r"containerization", r"orchestration", r"automation", r"testing",
    r"QA", r"agile", r"scrum", r"architecture", r"frontend", r"backend", r"full-stack",
    r"iOS", r"Android", r"data\s+science", r"machine\s+learning", r"deep\s+learning",
    r"analytics", r"business\s+intelligence", r"ETL", r"data\s+pipeline", r"big\s+data",
    r"streaming", r"real-time", r"distributed\s+systems", r"event-driven",
    r"message\s+queues", r"webhook", r"API\s+gateway", r"service\s+mesh", r"observability",
    r"telemetry", r"dashboards", r"SLA", r"SLO", r"incident\s+response",
    r"disaster\s+recovery", r"compliance", r"GDPR", r"HIPAA", r"SOC\s?2", r"PCI", r"audit",
    r"SSO", r"MFA", r"zero\s+trust", r"fraud\s+detection", r"anomaly\s+detection",
    r"OWASP", r"CVE", r"ISO\s+27001",
)

BUSINESS_TERMS = (
    "funding", "investment", "revenue", "growth", "scaling", "expansion", "market",
    "competition", "strategy", "partnership", "acquisition", "merger", "IPO", "valuation",
    "startup", "enterprise", "SaaS", "B2B", "B2C", "customer", "user", "retention",
    "conversion", "churn", "engagement", "satisfaction", "feedback", "survey", "analytics",
    "metrics", "KPI", "ROI", "ARR", "MRR", "CAC", "LTV", "DAU", "MAU", "WAU",
)

_TECH_RE = re.compile(
    r"(?<![\w.])(?:" + "|".join(sorted(TECH_TERMS, key=len, reverse=True)) + r")(?![\w])",
    re.IGNORECASE,
)
_HEADER_SPLIT_RE = re.compile(r"(?=##\s)")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\n\n+")
_HEADER_RE = re.compile(r"^#+\s+")
_LEAD_RE = re.compile(r"^(?:\d+\.\s+|[*\-]\s+\*\*)")
_NUMBER_RE = re.compile(r"\d+")


# --- Rule-based helpers ---


def split_sections(content: str) -> list[str]:
    """Split on ``## `` headers, then on wide paragraph breaks."""
    sections = [s.strip() for s in _HEADER_SPLIT_RE.split(content)]
    sections = [s for s in sections if len(s) > MIN_SECTION_LENGTH]
    if len(sections) > 1:
        return sections

    paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT_RE.split(content)]
    paragraphs = [p for p in paragraphs if len(p) > MIN_PARAGRAPH_LENGTH]
    if paragraphs:
        return paragraphs

    stripped = content.strip()
    return [stripped] if len(stripped) >= MIN_SECTION_LENGTH else []


def extract_title(section: str) -> str:
    lines = [line for line in section.split("\n") if line.strip()]
    if not lines:
        return DEFAULT_TITLE

    for line in lines[:5]:
        if _HEADER_RE.match(line):
            return web_utils.truncate(_HEADER_RE.sub("", line).strip(), MAX_TITLE_LENGTH)

    first_line = lines[0].strip()
    if _LEAD_RE.match(first_line):
        title = re.sub(r"^[\d.*\-\s]+", "", first_line).replace("**", "").strip()
        return web_utils.truncate(title, MAX_TITLE_LENGTH)

    first_sentence = re.split(r"[.!?]", first_line, maxsplit=1)[0].strip()
    if len(first_sentence) > 20:
        return web_utils.truncate(first_sentence, MAX_TITLE_LENGTH)
    return web_utils.truncate(first_line, MAX_TITLE_LENGTH)


def score_confidence(section: str, citation_count: int) -> float:
    score = 0.5 + min(citation_count * 0.1, 0.3)
    lowered = section.lower()
    if "specific" in lowered or "concrete" in lowered:
        score += 0.1
    if "recent" in lowered or "latest" in lowered:
        score += 0.1
    if len(_NUMBER_RE.findall(section)) > 2:
        score += 0.1
    return _clamp(score)


def determine_priority(template_priority: TemplatePriority, section: str) -> PriorityLevel:
    lowered = section.lower()
    if any(k in lowered for k in HIGH_PRIORITY_KEYWORDS):
        return PriorityLevel.HIGH
    if any(k in lowered for k in MEDIUM_PRIORITY_KEYWORDS):
        return PriorityLevel.MEDIUM
    return PriorityLevel.MEDIUM if template_priority == TemplatePriority.HIGH else PriorityLevel.LOW


def extract_tags(section: str) -> list[str]:
    """Technology terms match whole words; business terms match anywhere, so "users" tags "user"."""
    lowered = section.lower()
    business = [t for t in BUSINESS_TERMS if t.lower() in lowered]
    tags: list[str] = []
    for match in _TECH_RE.findall(section) + business:
        tag = " ".join(match.lower().split())
        if tag not in tags:
            tags.append(tag)
        if len(tags) >= MAX_TAGS:
            break
    return tags


def finding_type_for(category: TemplateCategory) -> FindingType:
    return CATEGORY_FINDING_TYPES.get(category, FindingType.PROBLEM_IDENTIFIED)


# --- Model reply parsing ---


def extract_json_object(raw_text: str) -> dict[str, Any]:
    text = raw_text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def _coerce_confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.5
    return _clamp(float(value))


def _coerce_finding_type(value: Any) -> FindingType:
    try:
        return FindingType(value)
    except ValueError:
        return FindingType.PROBLEM_IDENTIFIED


def _coerce_priority(value: Any) -> PriorityLevel:
    try:
        return PriorityLevel(value.lower())
    except (AttributeError, ValueError):
        return PriorityLevel.MEDIUM


def _coerce_tags(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [t.strip() for t in value if isinstance(t, str) and t.strip()][:MAX_TAGS]


def _coerce_text(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


class FindingExtractor:
    def __init__(self, completion: CompletionAdapter | None, *, model: str | None = None):
        self.completion = completion
        self.model = model or get_model()

    async def extract(
        self,
        session_id: str,
        company_id: str,
        company_name: str,
        template: QueryTemplate,
        result: ResearchResult,
    ) -> list[ResearchFinding]:
        if not result.content.strip():
            return []

        if self.completion is None:
            logger.debug(f"No completion client configured, using rule-based extraction for {template.id}")
            return self.extract_with_rules(session_id, company_id, template, result)

        try:
            findings = await self.extract_with_llm(
                session_id, company_id, company_name, template, result
            )
        except Exception as exc:
            logger.warning(f"LLM extraction failed for {template.id}, falling back to rules: {exc}")
            return self.extract_with_rules(session_id, company_id, template, result)

        logger.info(f"LLM extracted {len(findings)} findings from {template.name}")
        return findings

    async def extract_with_llm(
        self,
        session_id: str,
        company_id: str,
        company_name: str,
        template: QueryTemplate,
        result: ResearchResult,
    ) -> list[ResearchFinding]:
        """Raises ExtractionError when the reply is empty or not a findings object."""
        prompt = render_prompt(
            "extraction.user_prompt",
            company_name=company_name,
            template_category=template.category.value,
            template_name=template.name,
            template_description=template.description or "General research",
            content=result.content,
        )
        t0 = time.monotonic()
        try:
            completion = await self.completion.create(
                model=self.model,
                system=render_prompt("extraction.system_prompt"),
                prompt=prompt,
                max_tokens=settings.extraction_max_tokens,
                temperature=settings.extraction_temperature,
                json_mode=True,
            )
        except Exception as exc:
            log_service.log_llm_call(
                model=self.model,
                caller="extraction",
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc),
            )
            raise
        log_service.log_llm_call(
            model=completion.model,
            caller="extraction",
            input_tokens=completion.usage.input_tokens,
            output_tokens=completion.usage.output_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )

        if not completion.text.strip():
            raise ExtractionError("Empty response from completion service")
        try:
            payload = extract_json_object(completion.text)
        except json.JSONDecodeError as exc:
            raise ExtractionError(f"Unparsable extraction reply: {exc}") from exc

        raw_findings = payload.get("findings")
        if not isinstance(raw_findings, list):
            raise ExtractionError("Extraction reply has no findings list")

        findings: list[ResearchFinding] = []
        for item in raw_findings:
            if not isinstance(item, dict):
                continue
            findings.append(
                _build_finding(
                    session_id=session_id,
                    company_id=company_id,
                    template=template,
                    result=result,
                    finding_type=_coerce_finding_type(item.get("finding_type")),
                    title=web_utils.truncate(
                        _coerce_text(item.get("title"), DEFAULT_TITLE), MAX_TITLE_LENGTH
                    ),
                    content=_coerce_text(item.get("content"), ""),
                    confidence=_coerce_confidence(item.get("confidence_score")),
                    priority=_coerce_priority(item.get("priority_level")),
                    tags=_coerce_tags(item.get("tags")),
                    method=LLM_METHOD,
                    reasoning=item.get("reasoning") if isinstance(item.get("reasoning"), str) else None,
                )
            )
        return findings

    def extract_with_rules(
        self,
        session_id: str,
        company_id: str,
        template: QueryTemplate,
        result: ResearchResult,
    ) -> list[ResearchFinding]:
        citation_count = len(result.citations)
        finding_type = finding_type_for(template.category)
        return [
            _build_finding(
                session_id=session_id,
                company_id=company_id,
                template=template,
                result=result,
                finding_type=finding_type,
                title=extract_title(section),
                content=section,
                confidence=score_confidence(section, citation_count),
                priority=determine_priority(template.priority, section),
                tags=extract_tags(section),
                method=RULE_BASED_METHOD,
            )
            for section in split_sections(result.content)
        ]


def _build_finding(
    *,
    session_id: str,
    company_id: str,
    template: QueryTemplate,
    result: ResearchResult,
    finding_type: FindingType,
    title: str,
    content: str,
    confidence: float,
    priority: PriorityLevel,
    tags: list[str],
    method: str,
    reasoning: str | None = None,
) -> ResearchFinding:
    return ResearchFinding(
        id=str(uuid.uuid4()),
        session_id=session_id,
        company_id=company_id,
        finding_type=finding_type,
        title=title,
        content=content,
        confidence_score=confidence,
        priority_level=priority,
        citations=list(result.citations),
        tags=tags,
        structured_data={
            "extraction_method": method,
            "template_id": template.id,
            "template_category": template.category.value,
            "reasoning": reasoning,
            "related_questions": list(result.related_questions),
            "token_usage": {
                "prompt_tokens": result.usage.prompt_tokens,
                "completion_tokens": result.usage.completion_tokens,
                "total_tokens": result.usage.total_tokens,
            },
        },
    )
