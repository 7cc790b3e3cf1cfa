"""Process-wide registry of open sessions."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from agent_duplex.errors import SessionClosedError, TransportClosedError
from agent_duplex.logging import get_logger

if TYPE_CHECKING:
    from agent_duplex.envelope import Envelope
    from agent_duplex.session import Session

logger = get_logger("registry")


class SessionRegistry:
    """
    Open sessions keyed by id.

    Sessions register and unregister themselves from their own tasks, so
    every mutation happens under an ``asyncio.Lock``. Broadcasts and
    shutdown work on a snapshot taken under the lock.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def register(self, session: Session) -> None:
        async with self._lock:
            existing = self._sessions.get(session.session_id)
            self._sessions[session.session_id] = session
        if existing is not None and existing is not session:
            logger.info("Session %s re-attached; closing previous connection", session.session_id)
            existing.detach()
            await existing.close(reason="Superseded by a new connection")

    async def unregister(self, session_id: str) -> None:
        async with self._lock:
            self._sessions.pop(session_id, None)

    async def unregister_session(self, session: Session) -> None:
        """Remove *session* only if it is still the registered one for its id."""
        async with self._lock:
            if self._sessions.get(session.session_id) is session:
                del self._sessions[session.session_id]

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def sessions(self) -> list[Session]:
        async with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    async def broadcast(self, envelope: Envelope) -> int:
        """Send *envelope* to every open session. Returns how many got it."""
        delivered = 0
        for session in await self.sessions():
            try:
                await session.send(envelope)
                delivered += 1
            except (SessionClosedError, TransportClosedError) as e:
                logger.debug("Broadcast skipped %s: %s", session.session_id, e)
        return delivered

    async def shutdown(self, grace: float | None = None) -> None:
        """Notify every open session and close them all, concurrently."""
        sessions = await self.sessions()
        if not sessions:
            return
        logger.info("Shutting down %d session(s)", len(sessions))
        results = await asyncio.gather(
            *(s.shutdown(grace) for s in sessions), return_exceptions=True
        )
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.error(
                    "Session %s failed to shut down: %s", session.session_id, result
                )
