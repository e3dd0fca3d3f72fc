"""Catalog of research query templates and their rendering into provider requests."""
from __future__ import annotations

import json
from pathlib import Path
from string import Template

from company_research.errors import TemplateBindingError
from company_research.models.research import (
    ProviderRequest,
    QueryTemplate,
    QueryVariables,
    RecencyFilter,
    TemplateCategory,
    TemplatePriority,
)

TEMPLATES_PATH = Path(__file__).resolve().parents[1] / "prompts" / "query_templates.json"


def _load_templates() -> tuple[QueryTemplate, ...]:
    payload = json.loads(TEMPLATES_PATH.read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise ValueError("Query template catalog must be a JSON array.")

    templates: list[QueryTemplate] = []
    for entry in payload:
        recency = entry.get("recency_filter")
        domains = entry.get("search_domains")
        templates.append(
            QueryTemplate(
                id=entry["id"],
                name=entry["name"],
                description=entry["description"],
                category=TemplateCategory(entry["category"]),
                system_prompt=entry["system_prompt"],
                query_template=entry["query_template"],
                focus_areas=tuple(entry.get("focus_areas", ())),
                expected_outputs=tuple(entry.get("expected_outputs", ())),
                search_domains=tuple(domains) if domains else None,
                recency_filter=RecencyFilter(recency) if recency else None,
                priority=TemplatePriority(entry.get("priority", "medium")),
            )
        )
    return tuple(templates)


QUERY_TEMPLATES: tuple[QueryTemplate, ...] = _load_templates()
_BY_ID: dict[str, QueryTemplate] = {t.id: t for t in QUERY_TEMPLATES}

RESEARCH_TYPE_TEMPLATES: dict[str, tuple[str, ...]] = {
    "technical-challenges": ("technical-challenges", "tech-stack-analysis"),
    "business-intelligence": ("business-challenges", "market-opportunities", "funding-analysis"),
    "team-dynamics": ("key-decision-makers", "hiring-patterns"),
    "recent-activities": ("recent-activities",),
    "comprehensive": (
        "technical-challenges",
        "business-challenges",
        "key-decision-makers",
        "recent-activities",
        "market-opportunities",
    ),
}

DEFAULT_TEMPLATE_IDS: tuple[str, ...] = (
    "technical-challenges",
    "business-challenges",
    "key-decision-makers",
    "recent-activities",
)


def get_template(template_id: str) -> QueryTemplate | None:
    return _BY_ID.get(template_id)


def templates_by_category(category: TemplateCategory | str) -> list[QueryTemplate]:
    category = TemplateCategory(category)
    return [t for t in QUERY_TEMPLATES if t.category == category]


def high_priority_templates() -> list[QueryTemplate]:
    return [t for t in QUERY_TEMPLATES if t.priority == TemplatePriority.HIGH]


def resolve_templates(template_ids: list[str]) -> tuple[list[QueryTemplate], list[str]]:
    """Split ids into known templates (in request order) and unknown ids."""
    known: list[QueryTemplate] = []
    unknown: list[str] = []
    for template_id in template_ids:
        template = _BY_ID.get(template_id)
        if template is None:
            unknown.append(template_id)
        else:
            known.append(template)
    return known, unknown


def template_ids_for_research_type(research_type: str) -> list[str]:
    try:
        return list(RESEARCH_TYPE_TEMPLATES[research_type])
    except KeyError:
        known = ", ".join(sorted(RESEARCH_TYPE_TEMPLATES))
        raise KeyError(f"Unknown research type '{research_type}' (expected one of: {known})") from None


def required_placeholders(text: str) -> set[str]:
    names: set[str] = set()
    for match in Template.pattern.finditer(text):
        name = match.group("named") or match.group("braced")
        if name:
            names.add(name)
    return names


def render_template(template: QueryTemplate, variables: QueryVariables) -> ProviderRequest:
    """Bind variables into a template and return the concrete provider request.

    Every placeholder in the query must be present in the binding; a missing
    one raises TemplateBindingError instead of leaking a raw ``${name}`` into
    the request.
    """
    binding = variables.binding()
    missing = sorted(required_placeholders(template.query_template) - binding.keys())
    if missing:
        raise TemplateBindingError(
            f"Template '{template.id}' is missing values for: {', '.join(missing)}"
        )

    query = Template(template.query_template).substitute(binding)

    if variables.focus_areas:
        query += f"\n\nPay special attention to these focus areas: {', '.join(variables.focus_areas)}"
    if variables.competitors:
        query += f"\n\nConsider these competitors in your analysis: {', '.join(variables.competitors)}"
    if variables.technologies:
        query += f"\n\nRelevant technologies to consider: {', '.join(variables.technologies)}"

    return ProviderRequest(
        query=query,
        system_prompt=template.system_prompt,
        search_domains=template.search_domains,
        recency_filter=template.recency_filter,
    )
