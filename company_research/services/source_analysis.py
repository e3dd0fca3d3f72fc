from __future__ import annotations

import re
from urllib.parse import urlparse

from company_research.models.research import SourceInfo, SourceRecency, SourceType, utcnow
from company_research.tools import web_utils

# Checked in order; first match wins.
_TYPE_PATTERNS: tuple[tuple[SourceType, tuple[str, ...]], ...] = (
    (SourceType.CODE_HOST, ("github.com", "gitlab.com", "bitbucket.org")),
    (SourceType.BLOG, ("medium.com", "dev.to", "blog", "substack.com", "hashnode")),
    (SourceType.JOB_POSTING, ("linkedin.com", "jobs", "careers", "glassdoor.com", "indeed.com")),
    (SourceType.DOCUMENTATION, ("docs.", "documentation", "readthedocs")),
    (SourceType.NEWS, ("news", "techcrunch", "verge", "venturebeat", "businesswire")),
)

_FAST_NEWS_DOMAINS = ("techcrunch", "verge")
_YEAR_RE = re.compile(r"(?<!\d)(?:19|20)\d{2}(?!\d)")
_OLD_PATH_RE = re.compile(r"\b(?:archive|archives|old)\b", re.IGNORECASE)


def classify_domain(domain: str) -> SourceType:
    for source_type, patterns in _TYPE_PATTERNS:
        if any(p in domain for p in patterns):
            return source_type
    return SourceType.OTHER


def classify_recency(
    url: str, domain: str, source_type: SourceType, *, current_year: int | None = None
) -> SourceRecency:
    year = current_year or utcnow().year
    lowered = url.lower()
    years = [int(y) for y in _YEAR_RE.findall(url)]

    if (
        any(y >= year - 1 for y in years)
        or "latest" in lowered
        or "recent" in lowered
        or (source_type == SourceType.CODE_HOST and "/issues" in lowered)
        or (source_type == SourceType.NEWS and any(d in domain for d in _FAST_NEWS_DOMAINS))
    ):
        return SourceRecency.RECENT

    path = urlparse(url).path
    if any(y <= year - 3 for y in years) or _OLD_PATH_RE.search(path):
        return SourceRecency.OLDER
    return SourceRecency.MODERATE


def analyze_sources(citations: list[str], *, current_year: int | None = None) -> list[SourceInfo]:
    """Classify citation URLs by domain, source type and recency."""
    sources: list[SourceInfo] = []
    for url in citations:
        if not web_utils.is_valid_url(url):
            sources.append(
                SourceInfo(url=url, domain=url, type=SourceType.OTHER, recency=SourceRecency.MODERATE)
            )
            continue
        domain = web_utils.extract_domain(url)
        source_type = classify_domain(domain)
        recency = classify_recency(url, domain, source_type, current_year=current_year)
        sources.append(SourceInfo(url=url, domain=domain, type=source_type, recency=recency))
    return sources
