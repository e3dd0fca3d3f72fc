"""Batched execution of research templates against the research provider."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass

from loguru import logger

from company_research.config import settings
from company_research.models.research import (
    QueryOutcome,
    QuerySourceInfo,
    QueryTemplate,
    QueryVariables,
    ResearchProgress,
    ResearchResult,
)
from company_research.services import logger as log_service
from company_research.services.progress import ProgressTracker
from company_research.services.source_analysis import analyze_sources
from company_research.services.templates import render_template
from company_research.tools.perplexity import ResearchProvider

COST_LIMIT_EXCEEDED = "cost limit exceeded"
TIMEOUT = "timeout"

_DEFAULT_SEARCH_DOMAINS = ("github.com", "stackoverflow.com", "medium.com")


@dataclass(frozen=True, slots=True)
class PhaseDelays:
    """Pacing between progress phases, in seconds."""

    analysis: float = 0.0
    discovery: float = 0.0
    sources: float = 0.0
    classification: float = 0.0

    @classmethod
    def from_settings(cls) -> "PhaseDelays":
        return cls(
            analysis=settings.phase_delay_analysis_ms / 1000,
            discovery=settings.phase_delay_discovery_ms / 1000,
            sources=settings.phase_delay_sources_ms / 1000,
            classification=settings.phase_delay_classification_ms / 1000,
        )


def analysis_label(template: QueryTemplate) -> str:
    return f"Analyzing {template.name}: processing research parameters"


def discovery_label(template: QueryTemplate) -> str:
    domains = template.search_domains or _DEFAULT_SEARCH_DOMAINS
    return f"Searching web sources: {', '.join(domains[:3])}"


GATHERING_LABEL = "Gathering data: analyzing content from multiple sources"
CLASSIFICATION_LABEL = "Classifying sources: extracting insights and identifying patterns"


def result_label(source_count: int) -> str:
    return f"Found {source_count} sources, analyzing content quality"


def completion_label(template: QueryTemplate) -> str:
    return f"Complete: generated findings from {template.name}"


async def _pause(seconds: float) -> None:
    if seconds > 0:
        await asyncio.sleep(seconds)


def _batches(templates: list[QueryTemplate], size: int) -> list[list[QueryTemplate]]:
    size = max(size, 1)
    return [templates[i : i + size] for i in range(0, len(templates), size)]


class _RunState:
    """Running totals for one executor run; only touched from the event loop."""

    def __init__(self, cost_usd: float = 0.0, tokens: int = 0):
        self.cost_usd = cost_usd
        self.tokens = tokens


class QueryExecutor:
    def __init__(
        self,
        provider: ResearchProvider,
        tracker: ProgressTracker,
        *,
        phase_delays: PhaseDelays | None = None,
    ):
        self.provider = provider
        self.tracker = tracker
        self.phase_delays = phase_delays if phase_delays is not None else PhaseDelays.from_settings()

    async def run(
        self,
        session_id: str,
        templates: list[QueryTemplate],
        variables: QueryVariables,
        *,
        max_concurrency: int,
        max_cost_usd: float,
        timeout_s: float,
        cancel_event: asyncio.Event | None = None,
    ) -> list[QueryOutcome]:
        """Run templates in consecutive batches of ``max_concurrency``.

        A batch is dispatched only after the previous one has fully resolved.
        Outcomes are returned in template order; templates never dispatched
        because of cancellation are left out.
        """
        progress = self.tracker.get_progress(session_id)
        state = _RunState(
            cost_usd=progress.total_cost_usd if progress else 0.0,
            tokens=progress.total_tokens if progress else 0,
        )
        outcomes: list[QueryOutcome] = []

        for index, batch in enumerate(_batches(templates, max_concurrency)):
            if cancel_event is not None and cancel_event.is_set():
                logger.info(
                    f"Session {session_id} cancelled, skipping {len(templates) - len(outcomes)} queries"
                )
                break

            logger.debug(f"Session {session_id}: dispatching batch {index + 1} ({len(batch)} queries)")
            results = await asyncio.gather(
                *(
                    self._execute_one(
                        session_id,
                        template,
                        variables,
                        state,
                        max_cost_usd=max_cost_usd,
                        timeout_s=timeout_s,
                    )
                    for template in batch
                ),
                return_exceptions=True,
            )
            for template, item in zip(batch, results):
                if isinstance(item, BaseException):
                    if isinstance(item, asyncio.CancelledError):
                        raise item
                    # _execute_one records its own failures; this only catches bugs there.
                    logger.error(f"Unhandled error executing {template.id}: {item}")
                    item = QueryOutcome(template=template, error=str(item) or type(item).__name__)
                outcomes.append(item)

        return outcomes

    async def _execute_one(
        self,
        session_id: str,
        template: QueryTemplate,
        variables: QueryVariables,
        state: _RunState,
        *,
        max_cost_usd: float,
        timeout_s: float,
    ) -> QueryOutcome:
        if state.cost_usd >= max_cost_usd:
            logger.warning(
                f"Session {session_id}: skipping {template.id}, spent ${state.cost_usd:.4f} "
                f"of ${max_cost_usd:.4f}"
            )
            self._record_failure(session_id, template, COST_LIMIT_EXCEEDED, label=None)
            return QueryOutcome(template=template, error=COST_LIMIT_EXCEEDED)

        label = analysis_label(template)
        try:
            request = render_template(template, variables)

            self._set_phase(session_id, label, add_active=label)
            await _pause(self.phase_delays.analysis)

            self._set_phase(session_id, discovery_label(template))
            await _pause(self.phase_delays.discovery)

            self._set_phase(session_id, GATHERING_LABEL)
            result = await asyncio.wait_for(self.provider.research(request), timeout=timeout_s)

            state.cost_usd += max(result.cost_usd, 0.0)
            state.tokens += result.usage.total_tokens
            self.tracker.update_progress(
                session_id,
                current_query=result_label(len(result.citations)),
                total_cost_usd=state.cost_usd,
                total_tokens=state.tokens,
            )
            await _pause(self.phase_delays.sources)

            self._set_phase(session_id, CLASSIFICATION_LABEL)
            sources = analyze_sources(result.citations)
            await _pause(self.phase_delays.classification)

            self._record_success(session_id, template, result, sources, label)
            return QueryOutcome(template=template, result=result)
        except asyncio.TimeoutError:
            logger.warning(f"Session {session_id}: {template.id} timed out after {timeout_s}s")
            self._record_failure(session_id, template, TIMEOUT, label=label)
            return QueryOutcome(template=template, error=TIMEOUT)
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            logger.error(f"Session {session_id}: {template.id} failed: {reason}")
            self._record_failure(session_id, template, reason, label=label)
            return QueryOutcome(template=template, error=reason)

    def _set_phase(self, session_id: str, label: str, *, add_active: str | None = None) -> None:
        def apply(current: ResearchProgress) -> dict:
            changes: dict = {"current_query": label}
            if add_active is not None:
                changes["active_queries"] = current.active_queries + (add_active,)
            return changes

        self.tracker.mutate(session_id, apply)

    def _record_success(
        self,
        session_id: str,
        template: QueryTemplate,
        result: ResearchResult,
        sources: list,
        label: str,
    ) -> None:
        info = QuerySourceInfo(
            template_name=template.name,
            source_count=len(result.citations),
            sources=tuple(sources),
        )

        def apply(current: ResearchProgress) -> dict:
            return {
                "current_query": completion_label(template),
                "active_queries": _without(current.active_queries, label),
                "query_sources": current.query_sources + (info,),
                "completed_queries": current.completed_queries + 1,
            }

        self.tracker.mutate(session_id, apply)
        log_service.log_research_step(
            session_id,
            "query",
            "completed",
            {
                "template_id": template.id,
                "citations": len(result.citations),
                "cost_usd": result.cost_usd,
                "tokens": result.usage.total_tokens,
            },
        )

    def _record_failure(
        self, session_id: str, template: QueryTemplate, reason: str, *, label: str | None
    ) -> None:
        def apply(current: ResearchProgress) -> dict:
            changes: dict = {"failed_queries": current.failed_queries + 1}
            if label is not None:
                changes["active_queries"] = _without(current.active_queries, label)
            return changes

        self.tracker.mutate(session_id, apply)
        log_service.log_research_step(
            session_id, "query", "failed", {"template_id": template.id, "reason": reason}
        )


def _without(items: tuple[str, ...], label: str) -> tuple[str, ...]:
    """Drop one occurrence of label, keeping the other entries in order."""
    if label not in items:
        return items
    index = items.index(label)
    return items[:index] + items[index + 1 :]
