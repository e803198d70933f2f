"""Session stores holding at most one live workflow session per run id."""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, Optional
from uuid import uuid4

from .errors import ConfirmationError, IdempotencyError, InputError
from .models import Intent, WorkflowPhase, WorkflowSession

logger = logging.getLogger(__name__)


def new_run_id(prefix: str = "wf") -> str:
    stamp = format(int(datetime.now(timezone.utc).timestamp() * 1000), "x")
    return f"{prefix}-{stamp}-{uuid4().hex[:6]}"


class SessionStore(ABC):
    """Abstract session store. Implementations must serialize per run id."""

    @abstractmethod
    async def begin_or_resume(
        self, run_id: Optional[str], network: str, intent: Intent
    ) -> WorkflowSession:
        """Return the existing session for ``run_id`` or create a new one."""

    @abstractmethod
    async def advance(
        self, run_id: str, phase: WorkflowPhase, intent: Intent
    ) -> WorkflowSession:
        """Move a session to ``phase``; fails closed on an intent change."""

    @abstractmethod
    async def get(self, run_id: str) -> Optional[WorkflowSession]:
        pass

    @abstractmethod
    async def update(self, run_id: str, **changes) -> WorkflowSession:
        """Set auxiliary session attributes (confirm token, simulation)."""

    @abstractmethod
    async def mark_terminal(self, run_id: str) -> None:
        pass

    @abstractmethod
    def lock(self, run_id: str):
        """Async context manager: per-run critical section."""

    async def evict_expired(self) -> int:
        return 0

    async def clear(self) -> None:
        return None


class InMemorySessionStore(SessionStore):
    """
    Process-local session store.

    Constructed at process start and injected into the engine; entries are
    evicted after ``ttl_seconds`` of inactivity or by ``clear()``.
    """

    def __init__(self, ttl_seconds: int = 3600):
        self.ttl_seconds = ttl_seconds
        self._sessions: Dict[str, WorkflowSession] = {}
        self._run_locks: Dict[str, asyncio.Lock] = {}
        # guards the two dicts above
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def lock(self, run_id: str) -> AsyncIterator[None]:
        async with self._lock:
            run_lock = self._run_locks.get(run_id)
            if run_lock is None:
                run_lock = asyncio.Lock()
                self._run_locks[run_id] = run_lock
        async with run_lock:
            yield

    async def begin_or_resume(
        self, run_id: Optional[str], network: str, intent: Intent
    ) -> WorkflowSession:
        run_id = (run_id or "").strip() or new_run_id()
        async with self._lock:
            session = self._sessions.get(run_id)
            if session is not None and not self._expired(session):
                return session
            session = WorkflowSession(run_id=run_id, network=network, intent=intent)
            self._sessions[run_id] = session
            logger.info("workflow session created run_id=%s network=%s type=%s", run_id, network, intent.type)
            return session

    async def advance(
        self, run_id: str, phase: WorkflowPhase, intent: Intent
    ) -> WorkflowSession:
        async with self._lock:
            session = self._sessions.get(run_id)
            if session is None:
                raise InputError(
                    "unknown-run",
                    f"no workflow session for run id {run_id}",
                    remediation="Start with phase=analysis to open a session.",
                )
            if session.terminal:
                raise IdempotencyError(
                    "session-terminal",
                    f"run {run_id} already reached a terminal execute outcome",
                    remediation="Mint a new runId to retry intentionally.",
                )

            if phase is WorkflowPhase.ANALYSIS:
                # re-running analysis is the one sanctioned way to change the intent
                if session.intent != intent:
                    logger.info("workflow session re-analysed with new intent run_id=%s", run_id)
                session.intent = intent
                session.network = intent.network
                session.phase = WorkflowPhase.ANALYSIS
                session.confirm_token = None
                session.simulation = None
            else:
                if session.intent != intent:
                    raise ConfirmationError(
                        "session-intent-mismatch",
                        f"intent for run {run_id} differs from the one it was analysed with",
                        remediation="Re-run phase=analysis with the new intent to obtain a fresh confirm token.",
                    )
                if phase.rank < session.phase.rank:
                    raise InputError(
                        "phase-regression",
                        f"run {run_id} is at {session.phase.value}; cannot move back to {phase.value}",
                        remediation="Re-run phase=analysis or continue forward.",
                    )
                session.phase = phase
            session.updated_at = datetime.now(timezone.utc)
            return session

    async def get(self, run_id: str) -> Optional[WorkflowSession]:
        async with self._lock:
            session = self._sessions.get((run_id or "").strip())
            if session is None or self._expired(session):
                return None
            return session

    async def update(self, run_id: str, **changes) -> WorkflowSession:
        async with self._lock:
            session = self._sessions[run_id]
            for key in ("confirm_token", "simulation"):
                if key in changes:
                    setattr(session, key, changes[key])
            session.updated_at = datetime.now(timezone.utc)
            return session

    async def mark_terminal(self, run_id: str) -> None:
        async with self._lock:
            session = self._sessions.get(run_id)
            if session is not None:
                session.terminal = True
                session.updated_at = datetime.now(timezone.utc)

    async def evict_expired(self) -> int:
        async with self._lock:
            stale = [rid for rid, s in self._sessions.items() if self._expired(s)]
            for rid in stale:
                self._sessions.pop(rid, None)
                run_lock = self._run_locks.get(rid)
                if run_lock is not None and not run_lock.locked():
                    self._run_locks.pop(rid, None)
            if stale:
                logger.debug("evicted %d expired workflow sessions", len(stale))
            return len(stale)

    async def clear(self) -> None:
        async with self._lock:
            self._sessions.clear()
            self._run_locks.clear()

    def _expired(self, session: WorkflowSession) -> bool:
        age = datetime.now(timezone.utc) - session.updated_at
        return age > timedelta(seconds=self.ttl_seconds)
