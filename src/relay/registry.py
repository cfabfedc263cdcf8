"""
Registry of live call sessions, keyed by call id.

At most one session exists per call id. Admitting a second stream for the same
call (Twilio reconnect, or the language-selected stream replacing the auto-detect
stream) replaces the previous session, which is destroyed before the new one
starts.
"""

import asyncio
from typing import Callable, Dict, Optional

import structlog

from src.relay.session import CallSession

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[str, Optional[str]], CallSession]


class SessionRegistry:
    """Owns every CallSession in the process."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory
        self._sessions: Dict[str, CallSession] = {}
        self._lock = asyncio.Lock()
        self.superseded_count = 0
        self.total_admitted = 0

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def get(self, call_id: str) -> Optional[CallSession]:
        return self._sessions.get(call_id)

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._sessions

    async def admit(self, call_id: str, language: Optional[str] = None) -> CallSession:
        """
        Create, start and register a session for `call_id`.

        Any existing session for the same id is destroyed first. The registry
        lock only covers the swap; teardown and startup run outside it so other
        calls are never held up by this one.
        """
        async with self._lock:
            previous = self._sessions.pop(call_id, None)
            session = self._session_factory(call_id, language)
            self._sessions[call_id] = session
            self.total_admitted += 1
            if previous is not None:
                self.superseded_count += 1

        if previous is not None:
            logger.info("Superseding existing call session", call_id=call_id)
            await previous.destroy(reason="superseded")
        await session.start()

        logger.info(
            "Call session admitted",
            call_id=call_id,
            language=language,
            active_sessions=len(self._sessions),
        )
        return session

    async def remove(self, call_id: str, session: Optional[CallSession] = None) -> None:
        """
        Destroy and deregister the session for `call_id`.

        When `session` is given, the entry is only removed if it is that exact
        session, so a superseded stream closing late cannot evict its successor.
        """
        async with self._lock:
            current = self._sessions.get(call_id)
            if current is not None and (session is None or current is session):
                del self._sessions[call_id]
            target = session or current

        if target is not None:
            await target.destroy(reason="removed")

    async def shutdown(self) -> None:
        """Destroy every session (process shutdown)."""
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()

        if sessions:
            logger.info("Destroying call sessions", count=len(sessions))
            await asyncio.gather(
                *(s.destroy(reason="shutdown") for s in sessions),
                return_exceptions=True,
            )
