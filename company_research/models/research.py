from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Enums ---


class TemplateCategory(str, Enum):
    TECHNICAL = "technical"
    BUSINESS = "business"
    TEAM = "team"
    COMPETITIVE = "competitive"
    MARKET = "market"
    FUNDING = "funding"


class TemplatePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RecencyFilter(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class SessionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}
)


class SessionType(str, Enum):
    INITIAL_RESEARCH = "initial_research"
    DEEP_RESEARCH = "deep_research"
    COMPETITIVE_ANALYSIS = "competitive_analysis"
    MARKET_ANALYSIS = "market_analysis"
    FOLLOW_UP = "follow_up"


class FindingType(str, Enum):
    PROBLEM_IDENTIFIED = "problem_identified"
    MARKET_OPPORTUNITY = "market_opportunity"
    COMPETITIVE_INSIGHT = "competitive_insight"
    TECH_TREND = "tech_trend"
    BUSINESS_MODEL = "business_model"
    FUNDING_STATUS = "funding_status"
    TEAM_INSIGHT = "team_insight"
    PRODUCT_ANALYSIS = "product_analysis"


class PriorityLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SourceType(str, Enum):
    CODE_HOST = "code-host"
    BLOG = "blog"
    JOB_POSTING = "job-posting"
    DOCUMENTATION = "documentation"
    NEWS = "news"
    OTHER = "other"


class SourceRecency(str, Enum):
    RECENT = "recent"
    MODERATE = "moderate"
    OLDER = "older"


# --- Templates and provider I/O ---


@dataclass(frozen=True, slots=True)
class QueryTemplate:
    id: str
    name: str
    description: str
    category: TemplateCategory
    system_prompt: str
    query_template: str
    focus_areas: tuple[str, ...] = ()
    expected_outputs: tuple[str, ...] = ()
    search_domains: tuple[str, ...] | None = None
    recency_filter: RecencyFilter | None = None
    priority: TemplatePriority = TemplatePriority.MEDIUM


@dataclass(slots=True)
class QueryVariables:
    company_name: str
    industry: str | None = None
    founded_year: int | None = None
    size: str | None = None
    stage: str | None = None
    location: str | None = None
    website: str | None = None
    github_repos: list[str] = field(default_factory=list)
    competitors: list[str] = field(default_factory=list)
    key_people: list[str] = field(default_factory=list)
    technologies: list[str] = field(default_factory=list)
    focus_areas: list[str] = field(default_factory=list)

    def validate(self) -> list[str]:
        """Return human-readable validation errors; empty when valid."""
        errors: list[str] = []
        if not (self.company_name or "").strip():
            errors.append("Company name is required")
        if self.founded_year is not None and not (1800 <= self.founded_year <= utcnow().year):
            errors.append("Founded year must be between 1800 and current year")
        if any("github.com" not in repo for repo in self.github_repos):
            errors.append("GitHub repositories must be valid GitHub URLs")
        return errors

    def binding(self) -> dict[str, str]:
        """Flatten set variables into template substitution values."""
        values: dict[str, str] = {}
        for key, value in asdict(self).items():
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            if isinstance(value, list):
                if not value:
                    continue
                values[key] = ", ".join(str(v) for v in value)
            else:
                values[key] = str(value)
        return values


@dataclass(frozen=True, slots=True)
class ProviderRequest:
    query: str
    system_prompt: str
    search_domains: tuple[str, ...] | None = None
    recency_filter: RecencyFilter | None = None


@dataclass(slots=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(slots=True)
class ResearchResult:
    content: str
    citations: list[str] = field(default_factory=list)
    related_questions: list[str] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    model: str = ""


@dataclass(slots=True)
class QueryOutcome:
    template: QueryTemplate
    result: ResearchResult | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.result is not None


# --- Sessions ---


@dataclass(slots=True)
class ResearchSessionConfig:
    template_ids: list[str]
    variables: QueryVariables
    priority: TemplatePriority = TemplatePriority.MEDIUM
    max_concurrent_queries: int = 3
    max_cost_usd: float = 5.0
    timeout_ms: int = 120000
    enable_synthesis: bool = True
    save_to_database: bool = True
    session_type: SessionType = SessionType.DEEP_RESEARCH


@dataclass(slots=True)
class ResearchSession:
    id: str
    company_id: str
    created_by: str
    session_type: SessionType
    research_query: str
    status: SessionStatus = SessionStatus.PENDING
    api_provider: str = "perplexity"
    cost_usd: float = 0.0
    tokens_used: int = 0
    session_metadata: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "created_by": self.created_by,
            "session_type": self.session_type.value,
            "status": self.status.value,
            "research_query": self.research_query,
            "api_provider": self.api_provider,
            "cost_usd": self.cost_usd,
            "tokens_used": self.tokens_used,
            "session_metadata": self.session_metadata,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


# --- Progress ---


@dataclass(frozen=True, slots=True)
class SourceInfo:
    url: str
    domain: str
    type: SourceType
    recency: SourceRecency


@dataclass(frozen=True, slots=True)
class QuerySourceInfo:
    template_name: str
    source_count: int
    sources: tuple[SourceInfo, ...]
    completed_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class ResearchProgress:
    """Immutable snapshot of one session's execution state."""

    session_id: str
    total_queries: int
    completed_queries: int = 0
    failed_queries: int = 0
    current_query: str | None = None
    active_queries: tuple[str, ...] = ()
    query_sources: tuple[QuerySourceInfo, ...] = ()
    total_cost_usd: float = 0.0
    total_tokens: int = 0
    findings: tuple["ResearchFinding", ...] = ()
    status: SessionStatus = SessionStatus.PENDING
    error_message: str | None = None


# --- Findings and synthesis ---


@dataclass(slots=True)
class ResearchFinding:
    id: str
    session_id: str
    company_id: str
    finding_type: FindingType
    title: str
    content: str
    confidence_score: float
    priority_level: PriorityLevel
    citations: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    structured_data: dict[str, Any] = field(default_factory=dict)
    is_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "company_id": self.company_id,
            "finding_type": self.finding_type.value,
            "title": self.title,
            "content": self.content,
            "confidence_score": self.confidence_score,
            "priority_level": self.priority_level.value,
            "citations": list(self.citations),
            "tags": list(self.tags),
            "structured_data": self.structured_data,
            "is_verified": self.is_verified,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True)
class ActionableOpportunity:
    title: str
    description: str
    estimated_impact: TemplatePriority
    required_skills: list[str] = field(default_factory=list)
    potential_artifacts: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ResearchSynthesis:
    session_id: str
    company_name: str
    executive_summary: str
    key_findings: dict[FindingType, list[ResearchFinding]]
    actionable_opportunities: list[ActionableOpportunity]
    risk_factors: list[str]
    recommended_next_steps: list[str]
    confidence_level: float
    generated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class StartedSession:
    session_id: str
    progress: ResearchProgress


@dataclass(slots=True)
class SessionResults:
    session: ResearchSession
    findings: list[ResearchFinding]
    synthesis: ResearchSynthesis | None = None
