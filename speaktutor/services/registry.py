"""
SpeakTutor — Session Registry

Maps session_id → TutorSession for the lifetime of each connection.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .session import TutorSession

logger = logging.getLogger("speaktutor.registry")


class SessionRegistry:
    """Maps session_id → TutorSession."""

    def __init__(self) -> None:
        self._sessions: Dict[str, TutorSession] = {}

    def add(self, session: TutorSession) -> TutorSession:
        if session.session_id in self._sessions:
            raise ValueError(f"Session {session.session_id} already registered")
        self._sessions[session.session_id] = session
        logger.info(f"SessionRegistry: added {session.session_id} (total: {len(self._sessions)})")
        return session

    async def stop_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        session = self._sessions.pop(session_id, None)
        if session:
            summary = await session.stop()
            logger.info(f"SessionRegistry: removed {session_id} (total: {len(self._sessions)})")
            return summary
        return None

    async def stop_all(self) -> None:
        for sid in list(self._sessions.keys()):
            await self.stop_session(sid)

    def get(self, session_id: str) -> Optional[TutorSession]:
        return self._sessions.get(session_id)

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    @property
    def all_sessions(self) -> Dict[str, TutorSession]:
        return dict(self._sessions)
