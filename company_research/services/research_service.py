"""Public entry point: start, observe, cancel and collect research sessions."""
from __future__ import annotations

import asyncio
import dataclasses
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable

from loguru import logger

from company_research import llm_client
from company_research.errors import ConfigurationError, ResearchError
from company_research.models.research import (
    QueryVariables,
    ResearchFinding,
    ResearchProgress,
    ResearchSession,
    ResearchSessionConfig,
    ResearchSynthesis,
    SessionResults,
    SessionStatus,
    StartedSession,
    utcnow,
)
from company_research.services import logger as log_service
from company_research.services.executor import PhaseDelays, QueryExecutor
from company_research.services.extraction import FindingExtractor
from company_research.services.persistence import (
    FINDINGS_TABLE,
    SESSIONS_TABLE,
    ResearchStore,
    default_store,
)
from company_research.services.progress import ProgressListener, ProgressTracker
from company_research.services.synthesis import SynthesisGenerator
from company_research.services.templates import resolve_templates, template_ids_for_research_type
from company_research.tools.perplexity import PerplexityClient, ResearchProvider

UNKNOWN_TEMPLATE = "unknown template"
NO_VALID_TEMPLATES = "No valid templates found"


@dataclass(slots=True)
class _SessionState:
    session: ResearchSession
    config: ResearchSessionConfig
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    findings: list[ResearchFinding] = field(default_factory=list)
    synthesis: ResearchSynthesis | None = None


def validate_config(config: ResearchSessionConfig) -> None:
    """Raise ConfigurationError listing every problem with the config."""
    errors = config.variables.validate()
    if not config.template_ids:
        errors.append("At least one template must be specified")
    if config.max_concurrent_queries < 1:
        errors.append("max_concurrent_queries must be at least 1")
    if config.max_cost_usd < 0:
        errors.append("max_cost_usd must not be negative")
    if config.timeout_ms <= 0:
        errors.append("timeout_ms must be positive")
    if errors:
        raise ConfigurationError("; ".join(errors))


def _session_metadata(config: ResearchSessionConfig) -> dict[str, Any]:
    return {
        "template_ids": list(config.template_ids),
        "variables": dataclasses.asdict(config.variables),
        "config": {
            "priority": config.priority.value,
            "max_concurrent_queries": config.max_concurrent_queries,
            "max_cost_usd": config.max_cost_usd,
            "timeout_ms": config.timeout_ms,
            "enable_synthesis": config.enable_synthesis,
            "save_to_database": config.save_to_database,
        },
    }


def _sync_usage(session: ResearchSession, progress: ResearchProgress) -> None:
    """Keep the session record's running cost and tokens in step with progress."""
    session.cost_usd = max(session.cost_usd, progress.total_cost_usd)
    session.tokens_used = max(session.tokens_used, progress.total_tokens)


class CompanyResearchService:
    def __init__(
        self,
        provider: ResearchProvider,
        *,
        tracker: ProgressTracker | None = None,
        extractor: FindingExtractor | None = None,
        synthesizer: SynthesisGenerator | None = None,
        store: ResearchStore | None = None,
        phase_delays: PhaseDelays | None = None,
    ):
        self.provider = provider
        self.tracker = tracker or ProgressTracker()
        self.extractor = extractor or FindingExtractor(llm_client.client())
        self.synthesizer = synthesizer or SynthesisGenerator(llm_client.client())
        self.store = store
        self.executor = QueryExecutor(provider, self.tracker, phase_delays=phase_delays)
        self._sessions: dict[str, _SessionState] = {}

    @classmethod
    def from_settings(cls) -> "CompanyResearchService":
        """Wire the Perplexity provider and, when configured, Supabase persistence."""
        return cls(PerplexityClient(), store=default_store())

    # --- Lifecycle ---

    async def start_research_session(
        self, company_id: str, created_by: str, config: ResearchSessionConfig
    ) -> StartedSession:
        validate_config(config)

        session_id = str(uuid.uuid4())
        company_name = config.variables.company_name.strip()
        session = ResearchSession(
            id=session_id,
            company_id=company_id,
            created_by=created_by,
            session_type=config.session_type,
            research_query=f"Deep research for {company_name}",
            session_metadata=_session_metadata(config),
        )
        state = _SessionState(session=session, config=config)
        self._sessions[session_id] = state

        if config.save_to_database and self.store is not None:
            await self._persist("insert", SESSIONS_TABLE, self.store.save_session(session))

        progress = self.tracker.start_tracking(session_id, len(config.template_ids))
        self.tracker.subscribe(session_id, lambda snapshot: _sync_usage(session, snapshot))
        state.task = asyncio.create_task(self._supervise(state), name=f"research-{session_id}")

        log_service.log_research_step(
            session_id,
            "session",
            "started",
            {"company": company_name, "templates": list(config.template_ids)},
        )
        return StartedSession(session_id=session_id, progress=progress)

    async def start_research_for_type(
        self,
        company_id: str,
        created_by: str,
        research_type: str,
        variables: QueryVariables,
        **overrides: Any,
    ) -> StartedSession:
        try:
            template_ids = template_ids_for_research_type(research_type)
        except KeyError as exc:
            raise ConfigurationError(str(exc.args[0])) from None
        config = ResearchSessionConfig(template_ids=template_ids, variables=variables, **overrides)
        return await self.start_research_session(company_id, created_by, config)

    async def cancel_research_session(self, session_id: str) -> bool:
        """Mark a session cancelled; in-flight calls finish but no new batch starts."""
        state = self._sessions.get(session_id)
        if state is None:
            return False
        state.cancel_event.set()
        if not self._set_status(state, SessionStatus.CANCELLED):
            return False
        logger.info(f"Research session {session_id} cancelled")
        await self._persist_status(state)
        return True

    async def wait_for_session(
        self, session_id: str, timeout: float | None = None
    ) -> ResearchProgress | None:
        """Wait for the session's background task, then return its progress."""
        state = self._sessions.get(session_id)
        if state is None:
            return None
        if state.task is not None and not state.task.done():
            await asyncio.wait({state.task}, timeout=timeout)
        return self.tracker.get_progress(session_id)

    async def aclose(self) -> None:
        tasks = [s.task for s in self._sessions.values() if s.task is not None and not s.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        close = getattr(self.provider, "aclose", None)
        if close is not None:
            await close()

    # --- Accessors ---

    def get_research_progress(self, session_id: str) -> ResearchProgress | None:
        return self.tracker.get_progress(session_id)

    def subscribe_to_progress(self, session_id: str, listener: ProgressListener) -> None:
        self.tracker.subscribe(session_id, listener)

    def unsubscribe_from_progress(self, session_id: str, listener: ProgressListener) -> None:
        self.tracker.unsubscribe(session_id, listener)

    def get_session_results(self, session_id: str) -> SessionResults | None:
        state = self._sessions.get(session_id)
        if state is None:
            return None
        return SessionResults(
            session=state.session,
            findings=list(state.findings),
            synthesis=state.synthesis,
        )

    def cleanup(self, session_id: str) -> None:
        state = self._sessions.pop(session_id, None)
        if state is not None:
            state.cancel_event.set()
        self.tracker.cleanup(session_id)

    # --- Execution ---

    async def _supervise(self, state: _SessionState) -> None:
        session_id = state.session.id
        try:
            await self._execute_session(state)
        except asyncio.CancelledError:
            state.cancel_event.set()
            if self._set_status(state, SessionStatus.CANCELLED):
                await self._persist_status(state)
            raise
        except Exception as exc:
            logger.exception(f"Research session {session_id} failed")
            if self._set_status(state, SessionStatus.FAILED, error_message=str(exc)):
                await self._persist_status(state)

    async def _execute_session(self, state: _SessionState) -> None:
        session = state.session
        config = state.config
        session_id = session.id

        self._set_status(state, SessionStatus.IN_PROGRESS)

        templates, unknown = resolve_templates(config.template_ids)
        if unknown:
            logger.warning(f"Session {session_id}: unknown templates {unknown}")
            self.tracker.mutate(
                session_id, lambda cur: {"failed_queries": cur.failed_queries + len(unknown)}
            )
            for template_id in unknown:
                log_service.log_research_step(
                    session_id,
                    "query",
                    "failed",
                    {"template_id": template_id, "reason": UNKNOWN_TEMPLATE},
                )
        if not templates:
            raise ResearchError(NO_VALID_TEMPLATES)

        outcomes = await self.executor.run(
            session_id,
            templates,
            config.variables,
            max_concurrency=config.max_concurrent_queries,
            max_cost_usd=config.max_cost_usd,
            timeout_s=config.timeout_ms / 1000,
            cancel_event=state.cancel_event,
        )

        company_name = config.variables.company_name.strip()
        for outcome in outcomes:
            if state.cancel_event.is_set():
                break
            if not outcome.succeeded or not outcome.result.content:
                continue
            try:
                found = await self.extractor.extract(
                    session_id, session.company_id, company_name, outcome.template, outcome.result
                )
            except Exception:
                logger.exception(f"Session {session_id}: extraction failed for {outcome.template.id}")
                continue
            if not found:
                continue
            state.findings.extend(found)
            self.tracker.mutate(session_id, lambda cur: {"findings": cur.findings + tuple(found)})

        if state.cancel_event.is_set():
            if session.status == SessionStatus.CANCELLED:
                # Cost and tokens may have grown while in-flight calls drained.
                await self._persist_status(state)
            return

        if config.enable_synthesis:
            state.synthesis = await self.synthesizer.generate(
                session_id, company_name, list(state.findings)
            )

        if not self._set_status(state, SessionStatus.COMPLETED):
            return

        if config.save_to_database and self.store is not None:
            await self._persist("insert", FINDINGS_TABLE, self.store.save_findings(state.findings))
        await self._persist_status(state)

        progress = self.tracker.get_progress(session_id)
        log_service.log_research_step(
            session_id,
            "session",
            "completed",
            {
                "findings": len(state.findings),
                "completed_queries": progress.completed_queries if progress else None,
                "failed_queries": progress.failed_queries if progress else None,
                "cost_usd": session.cost_usd,
            },
        )

    def _set_status(
        self, state: _SessionState, status: SessionStatus, *, error_message: str | None = None
    ) -> bool:
        """Move the session to ``status``; returns False when it was already terminal."""
        session = state.session
        if session.status.is_terminal:
            if session.status != status:
                logger.warning(
                    f"Session {session.id} is {session.status.value}, ignoring transition to {status.value}"
                )
            return False

        session.status = status
        changes: dict[str, Any] = {"status": status}
        if status.is_terminal:
            session.completed_at = utcnow()
        if error_message is not None:
            session.error_message = error_message
            changes["error_message"] = error_message
        self.tracker.update_progress(session.id, **changes)
        return True

    async def _persist_status(self, state: _SessionState) -> None:
        if not state.config.save_to_database or self.store is None:
            return
        session = state.session
        await self._persist(
            "update",
            SESSIONS_TABLE,
            self.store.update_session(
                session.id,
                status=session.status,
                cost_usd=session.cost_usd,
                tokens_used=session.tokens_used,
                error_message=session.error_message,
                completed_at=session.completed_at.isoformat() if session.completed_at else None,
            ),
        )

    async def _persist(self, operation: str, table: str, call: Awaitable[None]) -> None:
        try:
            await call
        except Exception as exc:
            log_service.log_db_operation(operation, table, "error", error=str(exc))
