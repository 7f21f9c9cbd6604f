"""
registry.py — Voice Relay · Session Registry
============================================
Process-wide table of live sessions keyed by session id.  Injected into the
app and gateway (never a module global).  All table access goes through one
lock so creation / lookup / removal are safe from any task or thread.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Optional

from voice_relay.errors import DuplicateSession
from voice_relay.session import VoiceSession

log = logging.getLogger("voice_relay.registry")

SessionFactory = Callable[[str], VoiceSession]


class SessionRegistry:
    def __init__(self, max_sessions: Optional[int] = None) -> None:
        self.max_sessions = max_sessions
        self._sessions: dict[str, VoiceSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    @property
    def full(self) -> bool:
        return self.max_sessions is not None and len(self) >= self.max_sessions

    def create(self, session_id: str, factory: SessionFactory) -> VoiceSession:
        """Build and register a session.  An id still held by any record is refused."""
        with self._lock:
            if session_id in self._sessions:
                raise DuplicateSession(session_id)
            session = factory(session_id)
            self._sessions[session_id] = session
            count = len(self._sessions)
        log.info("event=session_registered session=%s active=%d", session_id, count)
        return session

    def lookup(self, session_id: str) -> Optional[VoiceSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> None:
        with self._lock:
            removed = self._sessions.pop(session_id, None)
            count = len(self._sessions)
        if removed is not None:
            log.info("event=session_removed session=%s active=%d", session_id, count)

    def snapshot(self) -> list[VoiceSession]:
        with self._lock:
            return list(self._sessions.values())

    async def close_all(self, reason: str) -> None:
        """Shut every session down (server stop)."""
        sessions = self.snapshot()
        if not sessions:
            return
        log.info("event=closing_all_sessions count=%d reason=%s", len(sessions), reason)
        await asyncio.gather(*(s.shutdown(reason) for s in sessions), return_exceptions=True)
        for s in sessions:
            self.remove(s.id)
