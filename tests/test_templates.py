from __future__ import annotations

import pytest

from company_research.errors import TemplateBindingError
from company_research.models.research import (
    QueryTemplate,
    QueryVariables,
    RecencyFilter,
    TemplateCategory,
)
from company_research.services import templates


def test_catalog_has_nine_unique_templates():
    ids = [t.id for t in templates.QUERY_TEMPLATES]

    assert len(ids) == 9
    assert len(set(ids)) == 9
    assert all("${company_name}" in t.query_template for t in templates.QUERY_TEMPLATES)


def test_high_priority_templates():
    ids = {t.id for t in templates.high_priority_templates()}

    assert ids == {"technical-challenges", "business-challenges", "key-decision-makers"}


def test_templates_by_category_accepts_enum_or_string():
    technical = templates.templates_by_category(TemplateCategory.TECHNICAL)

    assert [t.id for t in technical] == ["technical-challenges", "tech-stack-analysis"]
    assert templates.templates_by_category("funding")[0].id == "funding-analysis"


def test_resolve_templates_keeps_request_order_and_reports_unknown():
    known, unknown = templates.resolve_templates(
        ["recent-activities", "nope", "technical-challenges", "also-nope"]
    )

    assert [t.id for t in known] == ["recent-activities", "technical-challenges"]
    assert unknown == ["nope", "also-nope"]


def test_every_research_type_maps_to_known_templates():
    for research_type, ids in templates.RESEARCH_TYPE_TEMPLATES.items():
        _, unknown = templates.resolve_templates(list(ids))
        assert unknown == [], research_type

    assert templates.template_ids_for_research_type("team-dynamics") == [
        "key-decision-makers",
        "hiring-patterns",
    ]
    assert len(templates.template_ids_for_research_type("comprehensive")) == 5


def test_unknown_research_type_raises_key_error():
    with pytest.raises(KeyError):
        templates.template_ids_for_research_type("horoscope")


def test_render_template_substitutes_and_appends_context():
    template = templates.get_template("technical-challenges")
    variables = QueryVariables(
        company_name="Acme",
        focus_areas=["latency", "billing"],
        competitors=["Globex"],
        technologies=["Go", "Postgres"],
    )

    request = templates.render_template(template, variables)

    assert "Acme" in request.query
    assert "${" not in request.query
    assert "Pay special attention to these focus areas: latency, billing" in request.query
    assert "Consider these competitors in your analysis: Globex" in request.query
    assert "Relevant technologies to consider: Go, Postgres" in request.query
    assert request.system_prompt == template.system_prompt
    assert request.search_domains == template.search_domains
    assert request.recency_filter == RecencyFilter.WEEK


def test_render_template_without_optional_context():
    template = templates.get_template("funding-analysis")

    request = templates.render_template(template, QueryVariables(company_name="Acme"))

    assert "Pay special attention" not in request.query
    assert "competitors in your analysis" not in request.query


def test_missing_placeholder_raises_binding_error():
    template = QueryTemplate(
        id="custom",
        name="Custom",
        description="Custom query",
        category=TemplateCategory.MARKET,
        system_prompt="You are a market analyst.",
        query_template="How does ${company_name} compete in ${industry}?",
    )

    with pytest.raises(TemplateBindingError) as exc_info:
        templates.render_template(template, QueryVariables(company_name="Acme"))

    assert isinstance(exc_info.value, KeyError)
    assert str(exc_info.value) == "Template 'custom' is missing values for: industry"

    request = templates.render_template(
        template, QueryVariables(company_name="Acme", industry="Fintech")
    )
    assert request.query == "How does Acme compete in Fintech?"


def test_required_placeholders():
    assert templates.required_placeholders("${a} and $b but not $$c") == {"a", "b"}


def test_query_variables_validation():
    assert QueryVariables(company_name="Acme").validate() == []

    errors = QueryVariables(
        company_name=" ",
        founded_year=1700,
        github_repos=["https://gitlab.com/acme/app"],
    ).validate()

    assert errors == [
        "Company name is required",
        "Founded year must be between 1800 and current year",
        "GitHub repositories must be valid GitHub URLs",
    ]


def test_query_variables_binding_skips_empty_values():
    binding = QueryVariables(
        company_name="Acme", industry="", founded_year=2015, competitors=["A", "B"]
    ).binding()

    assert binding == {"company_name": "Acme", "founded_year": "2015", "competitors": "A, B"}
