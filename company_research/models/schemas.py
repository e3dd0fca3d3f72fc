from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, HttpUrl

from company_research.config import settings
from company_research.models.research import (
    QueryVariables,
    ResearchSessionConfig,
    TemplatePriority,
)
from company_research.services.templates import RESEARCH_TYPE_TEMPLATES

ResearchType = Literal[
    "technical-challenges",
    "business-intelligence",
    "team-dynamics",
    "recent-activities",
    "comprehensive",
]


# --- Requests ---


class CompanyData(BaseModel):
    name: str = Field(min_length=1)
    website: HttpUrl | None = None
    industry: str | None = None
    location: str | None = None
    stage: str | None = None
    size: str | None = None
    founded_year: int | None = None
    competitors: list[str] = []
    technologies: list[str] = []
    focus_areas: list[str] = []
    github_repos: list[str] = []
    key_people: list[str] = []


class ResearchConfigInput(BaseModel):
    priority: TemplatePriority = TemplatePriority.MEDIUM
    max_cost_usd: float = Field(default_factory=lambda: settings.default_max_cost_usd, ge=0)
    max_concurrent_queries: int = Field(
        default_factory=lambda: settings.default_max_concurrent_queries, ge=1, le=10
    )
    timeout_ms: int = Field(
        default_factory=lambda: settings.default_timeout_ms, ge=10000, le=300000
    )
    enable_synthesis: bool = True
    save_to_database: bool = True
    template_ids: list[str] | None = None


class StartResearchRequest(BaseModel):
    research_type: ResearchType = "comprehensive"
    company_data: CompanyData
    config: ResearchConfigInput = Field(default_factory=ResearchConfigInput)

    def to_session_config(self) -> ResearchSessionConfig:
        """Explicit template ids win over the research type's template set."""
        data = self.company_data
        template_ids = self.config.template_ids or list(RESEARCH_TYPE_TEMPLATES[self.research_type])
        variables = QueryVariables(
            company_name=data.name.strip(),
            industry=data.industry,
            founded_year=data.founded_year,
            size=data.size,
            stage=data.stage,
            location=data.location,
            website=str(data.website) if data.website else None,
            github_repos=list(data.github_repos),
            competitors=list(data.competitors),
            key_people=list(data.key_people),
            technologies=list(data.technologies),
            focus_areas=list(data.focus_areas),
        )
        return ResearchSessionConfig(
            template_ids=template_ids,
            variables=variables,
            priority=self.config.priority,
            max_concurrent_queries=self.config.max_concurrent_queries,
            max_cost_usd=self.config.max_cost_usd,
            timeout_ms=self.config.timeout_ms,
            enable_synthesis=self.config.enable_synthesis,
            save_to_database=self.config.save_to_database,
        )
