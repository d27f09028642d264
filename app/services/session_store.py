"""In-memory registry of live scrape sessions."""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from app.services.scraping_orchestrator import ScrapingOrchestrator
from app.telemetry.logger import get_logger


@dataclass
class ActiveSession:
    orchestrator: ScrapingOrchestrator
    created_at: float
    updated_at: float
    completed_at: float | None = None
    task: asyncio.Task | None = field(default=None, repr=False)


class SessionStore:
    """Sessions keyed by id, with age-based eviction.

    Completed sessions are dropped ``completed_ttl`` seconds after they
    finish; sessions that never complete are dropped ``stale_ttl`` seconds
    after their last update. A session evicted before it finished is
    stopped first so its browsers are closed.
    """

    def __init__(
        self,
        completed_ttl: float = 5 * 60,
        stale_ttl: float = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
        shutdown_timeout: float = 10.0,
    ):
        self.completed_ttl = completed_ttl
        self.shutdown_timeout = shutdown_timeout
        self.stale_ttl = stale_ttl
        self.clock = clock
        self._sessions: dict[str, ActiveSession] = {}
        self._sweeper: asyncio.Task | None = None
        self.logger = get_logger(__name__)

    def get(self, session_id: str) -> ActiveSession | None:
        return self._sessions.get(session_id)

    def set(
        self,
        session_id: str,
        orchestrator: ScrapingOrchestrator,
        task: asyncio.Task | None = None,
    ) -> ActiveSession:
        now = self.clock()
        session = ActiveSession(orchestrator=orchestrator, created_at=now, updated_at=now, task=task)
        self._sessions[session_id] = session
        return session

    def has(self, session_id: str) -> bool:
        return session_id in self._sessions

    def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def touch(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session:
            session.updated_at = self.clock()

    def mark_complete(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session:
            session.completed_at = session.updated_at = self.clock()

    async def cleanup_expired(self, now: float | None = None) -> list[str]:
        """Evict expired sessions, stopping any that never finished.

        Returns:
            Ids of the evicted sessions
        """
        now = self.clock() if now is None else now
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if (session.completed_at is not None and now - session.completed_at > self.completed_ttl)
            or (session.completed_at is None and now - session.updated_at > self.stale_ttl)
        ]
        evicted = [(session_id, self._sessions.pop(session_id)) for session_id in expired]
        for session_id, session in evicted:
            await self._shut_down(session_id, session)
        if expired:
            self.logger.info(
                f"Evicted {len(expired)} expired sessions",
                extra={"operation": "session_eviction", "remaining": len(self._sessions)},
            )
        return expired

    async def _shut_down(self, session_id: str, session: ActiveSession) -> None:
        status = session.orchestrator.status
        if status is None or not status.is_terminal:
            self.logger.warning(
                "Stopping stale session before eviction",
                extra={"operation": "session_eviction", "session_id": session_id},
            )
            await session.orchestrator.stop()
        task = session.task
        if task is None or task.done():
            return
        _, pending = await asyncio.wait({task}, timeout=self.shutdown_timeout)
        for unfinished in pending:
            unfinished.cancel()

    def session_ids(self) -> list[str]:
        return list(self._sessions)

    def count(self) -> int:
        return len(self._sessions)

    def clear(self) -> None:
        self._sessions.clear()

    def start_eviction(self, interval: float = 60.0) -> None:
        if self._sweeper and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._eviction_loop(interval))

    async def stop_eviction(self) -> None:
        if not self._sweeper:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _eviction_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup_expired()
            except Exception:
                self.logger.exception(
                    "Session eviction sweep failed", extra={"operation": "session_eviction"}
                )
