from __future__ import annotations

import asyncio
from typing import Any, Protocol

from company_research.config import settings
from company_research.models.research import ResearchFinding, ResearchSession
from company_research.services import logger as log_service

SESSIONS_TABLE = "company_research_sessions"
FINDINGS_TABLE = "research_findings"


class ResearchStore(Protocol):
    async def save_session(self, session: ResearchSession) -> None: ...

    async def update_session(self, session_id: str, **fields: Any) -> None: ...

    async def save_findings(self, findings: list[ResearchFinding]) -> None: ...


def get_client():
    from supabase import create_client

    return create_client(settings.supabase_url, settings.supabase_service_role_key)


async def _execute(query: Any) -> Any:
    """Run blocking Supabase query execution in a worker thread."""
    return await asyncio.to_thread(query.execute)


class SupabaseResearchStore:
    """Session and finding records in Supabase.

    Calls raise on failure; callers decide whether a failure matters.
    """

    def __init__(self, client: Any = None):
        self._client = client

    def client(self) -> Any:
        if self._client is None:
            self._client = get_client()
        return self._client

    async def save_session(self, session: ResearchSession) -> None:
        await _execute(self.client().table(SESSIONS_TABLE).insert(session.to_record()))
        log_service.log_db_operation("insert", SESSIONS_TABLE, "success", details=session.id)

    async def update_session(self, session_id: str, **fields: Any) -> None:
        row = {k: v.value if hasattr(v, "value") else v for k, v in fields.items()}
        await _execute(self.client().table(SESSIONS_TABLE).update(row).eq("id", session_id))
        log_service.log_db_operation(
            "update", SESSIONS_TABLE, "success", details=f"{session_id}: {sorted(row)}"
        )

    async def save_findings(self, findings: list[ResearchFinding]) -> None:
        if not findings:
            return
        rows = [f.to_record() for f in findings]
        await _execute(self.client().table(FINDINGS_TABLE).insert(rows))
        log_service.log_db_operation(
            "insert", FINDINGS_TABLE, "success", details=f"{len(rows)} findings"
        )


def default_store() -> SupabaseResearchStore | None:
    """The configured Supabase store, or None when persistence is not configured."""
    if not settings.persistence_configured:
        return None
    return SupabaseResearchStore()
