"""In-memory progress store with per-session listeners.

All writes for one session go through ``mutate`` under that session's lock,
so read-modify-write updates (appending to ``active_queries``, bumping
counters) from concurrent template completions are never lost. Listeners
are notified inside the same lock, in registration order.
"""
from __future__ import annotations

import dataclasses
import threading
from typing import Any, Callable

from loguru import logger

from company_research.models.research import ResearchProgress, SessionStatus

ProgressListener = Callable[[ResearchProgress], None]
ProgressMutation = Callable[[ResearchProgress], "dict[str, Any] | None"]

_TUPLE_FIELDS = ("active_queries", "query_sources", "findings")


class ProgressTracker:
    def __init__(self) -> None:
        self._progress: dict[str, ResearchProgress] = {}
        self._listeners: dict[str, list[ProgressListener]] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, session_id: str) -> threading.RLock | None:
        with self._registry_lock:
            return self._locks.get(session_id)

    def start_tracking(self, session_id: str, total_queries: int) -> ResearchProgress:
        progress = ResearchProgress(
            session_id=session_id, total_queries=total_queries, status=SessionStatus.PENDING
        )
        with self._registry_lock:
            self._locks.setdefault(session_id, threading.RLock())
            self._progress[session_id] = progress
            self._listeners.setdefault(session_id, [])
        return progress

    def get_progress(self, session_id: str) -> ResearchProgress | None:
        return self._progress.get(session_id)

    def session_ids(self) -> list[str]:
        with self._registry_lock:
            return list(self._progress)

    def update_progress(self, session_id: str, **changes: Any) -> ResearchProgress | None:
        """Shallow-merge changes into the snapshot and notify listeners."""
        return self.mutate(session_id, lambda _current: changes)

    def mutate(self, session_id: str, fn: ProgressMutation) -> ResearchProgress | None:
        """Apply a read-modify-write under the session lock.

        ``fn`` receives the current snapshot and returns the fields to change
        (or None for no change). Returns the resulting snapshot, or None when
        the session is not tracked.
        """
        lock = self._lock_for(session_id)
        if lock is None:
            return None
        with lock:
            current = self._progress.get(session_id)
            if current is None:
                return None
            changes = fn(current)
            if not changes:
                return current
            updated = _merge(current, changes)
            if updated is current:
                return current
            self._progress[session_id] = updated
            self._notify(session_id, updated)
            return updated

    def _notify(self, session_id: str, progress: ResearchProgress) -> None:
        for listener in list(self._listeners.get(session_id, ())):
            try:
                listener(progress)
            except Exception:
                logger.exception(f"Progress listener failed for session {session_id}")

    def subscribe(self, session_id: str, listener: ProgressListener) -> None:
        with self._registry_lock:
            self._listeners.setdefault(session_id, []).append(listener)

    def unsubscribe(self, session_id: str, listener: ProgressListener) -> None:
        with self._registry_lock:
            listeners = self._listeners.get(session_id)
            if listeners and listener in listeners:
                listeners.remove(listener)

    def cleanup(self, session_id: str) -> None:
        with self._registry_lock:
            self._progress.pop(session_id, None)
            self._listeners.pop(session_id, None)
            self._locks.pop(session_id, None)


def _merge(current: ResearchProgress, changes: dict[str, Any]) -> ResearchProgress:
    changes = dict(changes)

    status = changes.get("status")
    if status is not None:
        status = SessionStatus(status)
        if current.status.is_terminal and status != current.status:
            logger.warning(
                f"Ignoring status change {current.status.value} -> {status.value} "
                f"for session {current.session_id}"
            )
            changes.pop("status")
        else:
            changes["status"] = status

    cost = changes.get("total_cost_usd")
    if cost is not None and cost < current.total_cost_usd:
        logger.warning(
            f"Ignoring cost decrease {current.total_cost_usd} -> {cost} "
            f"for session {current.session_id}"
        )
        changes.pop("total_cost_usd")

    for name in _TUPLE_FIELDS:
        if name in changes and not isinstance(changes[name], tuple):
            changes[name] = tuple(changes[name])

    if not changes:
        return current
    return dataclasses.replace(current, **changes)
