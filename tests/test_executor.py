from __future__ import annotations

import asyncio

import pytest

from company_research.models.research import (
    ProviderRequest,
    QueryVariables,
    ResearchProgress,
    ResearchResult,
    TokenUsage,
)
from company_research.services import templates
from company_research.services.executor import (
    COST_LIMIT_EXCEEDED,
    TIMEOUT,
    PhaseDelays,
    QueryExecutor,
    analysis_label,
    completion_label,
)
from company_research.services.progress import ProgressTracker

TEMPLATE_BY_SYSTEM_PROMPT = {t.system_prompt: t.id for t in templates.QUERY_TEMPLATES}
NO_DELAYS = PhaseDelays()


class FakeProvider:
    def __init__(
        self,
        *,
        cost: float = 0.01,
        delays: dict[str, float] | None = None,
        fail_for: tuple[str, ...] = (),
        citations: tuple[str, ...] = ("https://github.com/acme/app/issues/1", "https://techcrunch.com/acme"),
    ):
        self.cost = cost
        self.delays = delays or {}
        self.fail_for = fail_for
        self.citations = citations
        self.calls: list[str] = []
        self.events: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0

    async def research(self, request: ProviderRequest) -> ResearchResult:
        template_id = TEMPLATE_BY_SYSTEM_PROMPT[request.system_prompt]
        self.calls.append(template_id)
        self.events.append(("start", template_id))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            delay = self.delays.get(template_id, self.delays.get("*", 0.0))
            if delay:
                await asyncio.sleep(delay)
            if template_id in self.fail_for:
                raise RuntimeError(f"provider exploded on {template_id}")
            return ResearchResult(
                content=f"Research content for {template_id}",
                citations=list(self.citations),
                usage=TokenUsage(prompt_tokens=10, completion_tokens=20, total_tokens=30),
                cost_usd=self.cost,
                model="sonar-pro",
            )
        finally:
            self.active -= 1
            self.events.append(("end", template_id))


def _templates(*ids: str):
    found, unknown = templates.resolve_templates(list(ids))
    assert not unknown
    return found


FOUR = ("technical-challenges", "business-challenges", "key-decision-makers", "recent-activities")


def _setup(provider: FakeProvider, total: int):
    tracker = ProgressTracker()
    tracker.start_tracking("s1", total)
    snapshots: list[ResearchProgress] = []
    tracker.subscribe("s1", snapshots.append)
    return QueryExecutor(provider, tracker, phase_delays=NO_DELAYS), tracker, snapshots


async def _run(executor, ids, *, concurrency=2, max_cost=5.0, timeout_s=5.0, cancel_event=None):
    return await executor.run(
        "s1",
        _templates(*ids),
        QueryVariables(company_name="Acme"),
        max_concurrency=concurrency,
        max_cost_usd=max_cost,
        timeout_s=timeout_s,
        cancel_event=cancel_event,
    )


@pytest.mark.asyncio
async def test_batches_run_to_completion_before_next_batch_starts():
    provider = FakeProvider(delays={"*": 0.01})
    executor, tracker, _ = _setup(provider, 4)

    outcomes = await _run(executor, FOUR, concurrency=2)

    assert [o.template.id for o in outcomes] == list(FOUR)
    assert all(o.succeeded for o in outcomes)
    kinds = [kind for kind, _ in provider.events]
    assert kinds == ["start", "start", "end", "end", "start", "start", "end", "end"]
    first_batch = {tid for _, tid in provider.events[:4]}
    assert first_batch == {"technical-challenges", "business-challenges"}
    assert provider.max_active == 2
    assert tracker.get_progress("s1").completed_queries == 4


@pytest.mark.asyncio
async def test_cost_ceiling_skips_remaining_templates_without_calls():
    provider = FakeProvider(cost=0.03)
    executor, tracker, _ = _setup(provider, 4)

    outcomes = await _run(executor, FOUR, concurrency=1, max_cost=0.05)

    assert len(provider.calls) == 2
    assert [o.error for o in outcomes] == [None, None, COST_LIMIT_EXCEEDED, COST_LIMIT_EXCEEDED]
    progress = tracker.get_progress("s1")
    assert progress.completed_queries == 2
    assert progress.failed_queries == 2
    assert progress.total_cost_usd == pytest.approx(0.06)
    assert progress.total_tokens == 60


@pytest.mark.asyncio
async def test_cost_ceiling_is_checked_at_dispatch_only():
    provider = FakeProvider(cost=0.03)
    executor, tracker, _ = _setup(provider, 4)

    outcomes = await _run(executor, FOUR, concurrency=2, max_cost=0.05)

    # The whole first batch is dispatched under budget and overshoots it.
    assert len(provider.calls) == 2
    assert [o.succeeded for o in outcomes] == [True, True, False, False]
    assert tracker.get_progress("s1").total_cost_usd == pytest.approx(0.06)


@pytest.mark.asyncio
async def test_slow_call_is_recorded_as_timeout():
    provider = FakeProvider(delays={"business-challenges": 0.05})
    executor, tracker, _ = _setup(provider, 2)

    outcomes = await _run(
        executor, ("technical-challenges", "business-challenges"), concurrency=2, timeout_s=0.001
    )

    by_id = {o.template.id: o for o in outcomes}
    assert by_id["business-challenges"].error == TIMEOUT
    assert by_id["technical-challenges"].succeeded
    progress = tracker.get_progress("s1")
    assert progress.failed_queries == 1
    assert progress.completed_queries == 1
    assert progress.active_queries == ()


@pytest.mark.asyncio
async def test_failing_template_does_not_abort_batch_or_later_batches():
    provider = FakeProvider(fail_for=("technical-challenges",))
    executor, tracker, _ = _setup(provider, 4)

    outcomes = await _run(executor, FOUR, concurrency=2)

    assert provider.calls == list(FOUR)
    assert outcomes[0].error == "provider exploded on technical-challenges"
    assert all(o.succeeded for o in outcomes[1:])
    progress = tracker.get_progress("s1")
    assert progress.failed_queries == 1
    assert progress.completed_queries == 3
    assert progress.active_queries == ()


@pytest.mark.asyncio
async def test_progress_invariants_hold_in_every_snapshot():
    provider = FakeProvider(cost=0.02, fail_for=("key-decision-makers",), delays={"*": 0.005})
    executor, _, snapshots = _setup(provider, 4)

    await _run(executor, FOUR, concurrency=3)

    assert snapshots
    costs = [s.total_cost_usd for s in snapshots]
    assert costs == sorted(costs)
    for snapshot in snapshots:
        assert snapshot.completed_queries + snapshot.failed_queries <= snapshot.total_queries


@pytest.mark.asyncio
async def test_each_template_reports_six_phases_in_order():
    provider = FakeProvider()
    executor, tracker, snapshots = _setup(provider, 1)

    await _run(executor, ("technical-challenges",), concurrency=1)

    template = templates.get_template("technical-challenges")
    labels: list[str] = []
    for snapshot in snapshots:
        if snapshot.current_query and (not labels or labels[-1] != snapshot.current_query):
            labels.append(snapshot.current_query)
    assert labels == [
        analysis_label(template),
        "Searching web sources: github.com, stackoverflow.com, medium.com",
        "Gathering data: analyzing content from multiple sources",
        "Found 2 sources, analyzing content quality",
        "Classifying sources: extracting insights and identifying patterns",
        completion_label(template),
    ]
    assert analysis_label(template) in snapshots[0].active_queries
    final = tracker.get_progress("s1")
    assert final.active_queries == ()
    assert len(final.query_sources) == 1
    info = final.query_sources[0]
    assert info.template_name == template.name
    assert info.source_count == 2
    assert [s.domain for s in info.sources] == ["github.com", "techcrunch.com"]


@pytest.mark.asyncio
async def test_concurrent_completions_keep_every_source_entry():
    provider = FakeProvider(delays={"*": 0.001})
    executor, tracker, _ = _setup(provider, 4)

    await _run(executor, FOUR, concurrency=4)

    progress = tracker.get_progress("s1")
    assert len(progress.query_sources) == 4
    assert progress.completed_queries == 4


@pytest.mark.asyncio
async def test_cancel_event_stops_further_batches():
    cancel_event = asyncio.Event()
    provider = FakeProvider()
    original = provider.research

    async def cancelling_research(request):
        cancel_event.set()
        return await original(request)

    provider.research = cancelling_research
    executor, tracker, _ = _setup(provider, 3)

    outcomes = await _run(
        executor,
        ("technical-challenges", "business-challenges", "recent-activities"),
        concurrency=1,
        cancel_event=cancel_event,
    )

    assert provider.calls == ["technical-challenges"]
    assert len(outcomes) == 1
    assert outcomes[0].succeeded
    assert tracker.get_progress("s1").completed_queries == 1


@pytest.mark.asyncio
async def test_binding_error_is_recorded_as_failure():
    provider = FakeProvider()
    executor, tracker, _ = _setup(provider, 1)

    outcomes = await executor.run(
        "s1",
        _templates("technical-challenges"),
        QueryVariables(company_name=""),
        max_concurrency=1,
        max_cost_usd=5.0,
        timeout_s=5.0,
    )

    assert outcomes[0].error is not None
    assert "company_name" in outcomes[0].error
    assert provider.calls == []
    assert tracker.get_progress("s1").failed_queries == 1
