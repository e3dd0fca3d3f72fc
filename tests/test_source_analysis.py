from __future__ import annotations

import pytest

from company_research.models.research import SourceRecency, SourceType
from company_research.services.source_analysis import analyze_sources, classify_domain


@pytest.mark.parametrize(
    "domain, expected",
    [
        ("github.com", SourceType.CODE_HOST),
        ("gitlab.com", SourceType.CODE_HOST),
        ("medium.com", SourceType.BLOG),
        ("engineering.blog.acme.com", SourceType.BLOG),
        ("careers.acme.com", SourceType.JOB_POSTING),
        ("linkedin.com", SourceType.JOB_POSTING),
        ("docs.acme.com", SourceType.DOCUMENTATION),
        ("acme.readthedocs.io", SourceType.DOCUMENTATION),
        ("techcrunch.com", SourceType.NEWS),
        ("news.ycombinator.com", SourceType.NEWS),
        ("acme.com", SourceType.OTHER),
    ],
)
def test_classify_domain(domain, expected):
    assert classify_domain(domain) == expected


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://github.com/acme/app/issues/42", SourceRecency.RECENT),
        ("https://techcrunch.com/2020/03/01/acme-raises", SourceRecency.RECENT),
        ("https://acme.com/blog/latest-release", SourceRecency.RECENT),
        ("https://acme.com/posts/2025/roadmap", SourceRecency.RECENT),
        ("https://acme.com/posts/2024/roadmap", SourceRecency.MODERATE),
        ("https://medium.com/acme/scaling-2019", SourceRecency.OLDER),
        ("https://acme.com/archive/press", SourceRecency.OLDER),
        ("https://acme.com/golden-path", SourceRecency.MODERATE),
        ("https://github.com/acme/app", SourceRecency.MODERATE),
    ],
)
def test_recency(url, expected):
    [source] = analyze_sources([url], current_year=2026)

    assert source.recency == expected


def test_analyze_sources_keeps_order_and_strips_www():
    sources = analyze_sources(
        ["https://www.github.com/acme/app/issues/1", "https://careers.acme.com/jobs/42"],
        current_year=2026,
    )

    assert [s.domain for s in sources] == ["github.com", "careers.acme.com"]
    assert [s.type for s in sources] == [SourceType.CODE_HOST, SourceType.JOB_POSTING]
    assert sources[0].url == "https://www.github.com/acme/app/issues/1"


def test_invalid_url_is_kept_as_other():
    [source] = analyze_sources(["not a url"], current_year=2026)

    assert source.domain == "not a url"
    assert source.type == SourceType.OTHER
    assert source.recency == SourceRecency.MODERATE


def test_empty_citations():
    assert analyze_sources([]) == []
