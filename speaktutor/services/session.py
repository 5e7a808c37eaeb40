"""
SpeakTutor — Tutor Session

================================================================================
ONE CONVERSATION WITH ONE LEARNER
================================================================================

`TutorSession` wires a TurnController to its collaborators and owns what
lives longer than a single turn:

  • topic and target level, recorded with the progress store at start
  • the welcome message and a bounded chat history
  • the learner profile cache handed to the controller
  • playback settings (base rate, pitch, voice), adjustable at runtime
  • a summary when the session stops

Controller snapshots, chat messages and notice changes are forwarded to the
caller's callbacks (the WebSocket layer in production).
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from ..core.config import turn_cfg
from ..core.interfaces import ProgressStore, SpeechCaptureAdapter, SpeechPlaybackAdapter
from ..core.models import (
    CEFRLevel,
    ChatMessage,
    ConversationSnapshot,
    TTSSettings,
)
from ..processing.reasoning import ReasoningClient
from ..processing.turn_controller import TurnController

logger = logging.getLogger("speaktutor.session")


def welcome_text(level: CEFRLevel, topic: str) -> str:
    return f'Welcome to your {level.value} session about "{topic}". Let\'s start!'


class TutorSession:
    """
    Lifecycle:
        session = TutorSession(session_id, capture, playback, reasoning, store, on_chat=...)
        await session.start(topic="Travel", level=CEFRLevel.B1)
        session.toggle()            # microphone on / off
        ...
        summary = await session.stop()
    """

    def __init__(
        self,
        session_id: str,
        capture: SpeechCaptureAdapter,
        playback: SpeechPlaybackAdapter,
        reasoning: ReasoningClient,
        store: ProgressStore,
        settings: Optional[TTSSettings] = None,
        max_history: int = turn_cfg.max_history_messages,
        on_state: Optional[Callable[[ConversationSnapshot], Any]] = None,
        on_chat: Optional[Callable[[ChatMessage], Any]] = None,
        on_notice: Optional[Callable[[Optional[str]], Any]] = None,
        **controller_kwargs: Any,
    ) -> None:
        self.session_id = session_id
        self._store = store
        self._reasoning = reasoning

        # Callbacks for streaming data to the server/frontend layer
        self._on_state = on_state
        self._on_chat = on_chat
        self._on_notice = on_notice

        self._history: Deque[ChatMessage] = deque(maxlen=max_history)
        self._topic = "General"
        self._level = CEFRLevel.A1
        self._started_at: Optional[float] = None
        self._last_notice: Optional[str] = None
        self._words_credited = 0

        self.controller = TurnController(
            capture,
            playback,
            reasoning,
            store,
            settings=settings,
            label=session_id,
            on_state_change=self._handle_state,
            on_message=self._handle_message,
            **controller_kwargs,
        )

    # ── Read-only views ─────────────────────────────────────────────────

    @property
    def is_active(self) -> bool:
        return self._started_at is not None

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def level(self) -> CEFRLevel:
        return self._level

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._history)

    def to_dict(self) -> Dict[str, Any]:
        snap = self.controller.snapshot()
        return {
            "session_id": self.session_id,
            "active": self.is_active,
            "topic": self._topic,
            "level": self._level.value,
            "progress_level": self.controller.profile.progress_level.value,
            "phase": snap.phase.value,
            "listening": snap.is_session_active,
            "drill_locked": snap.drill_locked,
            "flow_state": snap.flow_state.to_dict(),
            "messages": len(self._history),
            "words_credited": self._words_credited,
            "voice": self.controller.settings.to_dict(),
            "reasoning_calls": self._reasoning.calls,
            "reasoning_fallbacks": self._reasoning.fallbacks,
            "latency": self.controller.latency_summary(),
            "recent_phases": self.controller.phase_history[-5:],
        }

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def start(self, topic: str = "General", level: CEFRLevel = CEFRLevel.A1) -> Dict[str, Any]:
        """Record the session, reset streaks and greet the learner."""
        self._topic = topic.strip() or "General"
        self._level = level
        self._started_at = time.time()
        self._history.clear()
        self._words_credited = 0

        try:
            await self._store.begin_session(self._topic, level)
        except Exception as e:
            logger.warning(f"[{self.session_id}] Could not record session start: {e}")

        try:
            self.controller.set_profile(await self._store.load_profile())
        except Exception as e:
            logger.warning(f"[{self.session_id}] Could not load learner profile: {e}")

        self.controller.reset_progress()

        welcome = ChatMessage(
            id=uuid.uuid4().hex[:8],
            role="assistant",
            text=welcome_text(level, self._topic),
        )
        await self._handle_message(welcome)

        logger.info(f"[{self.session_id}] Session started: {level.value} / '{self._topic}'")
        return {
            "session_id": self.session_id,
            "topic": self._topic,
            "level": level.value,
            "welcome": welcome.text,
            "voice": self.controller.settings.to_dict(),
        }

    async def stop(self) -> Dict[str, Any]:
        """Stop listening, discard in-flight work and summarise."""
        duration = time.time() - (self._started_at or time.time())
        await self.controller.close()
        self._started_at = None

        turns = sum(1 for m in self._history if m.role == "user")
        scores = [m.assessment.final_score for m in self._history if m.assessment is not None]

        summary = {
            "session_id": self.session_id,
            "topic": self._topic,
            "level": self._level.value,
            "duration_s": round(duration, 1),
            "turns": turns,
            "average_score": round(sum(scores) / len(scores), 1) if scores else None,
            "words_credited": self._words_credited,
            "flow_state": self.controller.flow_state.to_dict(),
            "reasoning_calls": self._reasoning.calls,
            "reasoning_fallbacks": self._reasoning.fallbacks,
        }
        logger.info(f"[{self.session_id}] Session stopped after {turns} turn(s), {duration:.0f}s")
        return summary

    # ── User actions ────────────────────────────────────────────────────

    def toggle(self) -> None:
        self.controller.toggle_session()

    def pause(self) -> None:
        self.controller.pause()

    def resume(self) -> None:
        self.controller.resume()

    def update_voice(
        self,
        rate: Optional[float] = None,
        pitch: Optional[float] = None,
        voice_id: Optional[str] = None,
    ) -> TTSSettings:
        return self.controller.update_settings(rate=rate, pitch=pitch, voice_id=voice_id)

    # ── Controller callbacks ────────────────────────────────────────────

    async def _handle_state(self, snap: ConversationSnapshot) -> None:
        if self._on_state:
            cb = self._on_state(snap)
            if asyncio.iscoroutine(cb):
                await cb

        if snap.notice != self._last_notice:
            self._last_notice = snap.notice
            if self._on_notice:
                cb = self._on_notice(snap.notice)
                if asyncio.iscoroutine(cb):
                    await cb

    async def _handle_message(self, msg: ChatMessage) -> None:
        self._history.append(msg)
        self._words_credited += msg.xp_gained

        if self._on_chat:
            cb = self._on_chat(msg)
            if asyncio.iscoroutine(cb):
                await cb
