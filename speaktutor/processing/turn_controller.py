"""
SpeakTutor — Turn Controller

================================================================================
TURN-TAKING ORCHESTRATOR
================================================================================

Drives one voice conversation, turn after turn:

  1. Arms speech capture and accumulates transcript fragments.
  2. Closes the utterance after a quiet period (silence timer) or when
     capture ends on its own, whichever comes first.
  3. Sends the utterance to the reasoning client, raced against a hard
     watchdog. A stalled call is abandoned, a short "retrying" notice is
     shown, and the user is listened to again.
  4. Feeds the assessment to the difficulty/tone controller and applies the
     drill lock (a sub-perfect answer forces the next call to be a
     corrective retry).
  5. Plays the reply back at a rate adapted to level and tone, then
     re-arms capture while the session is active.

Every input (capture events, timer firings, reasoning results, playback
completion) enters through `dispatch()` as a typed event stamped with the
turn id it belongs to. Events from an older turn are dropped, which is how
a toggle-off, pause or watchdog abandons in-flight work without locks.

The controller is the only writer of ConversationState and FlowState;
everyone else gets immutable ConversationSnapshot values.
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import replace
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..core.config import turn_cfg, voice_cfg
from ..core.errors import (
    RETRY_NOTICE,
    UNSUPPORTED,
    capture_error_message,
    is_fatal_capture_code,
)
from ..core.events import (
    CaptureEnded,
    CaptureError,
    CaptureEvent,
    CaptureResult,
    CaptureStarted,
    ControllerEvent,
    PlaybackFinished,
    ReplyReceived,
    RetryNoticeElapsed,
    SilenceElapsed,
    WatchdogElapsed,
)
from ..core.interfaces import ProgressStore, SpeechCaptureAdapter, SpeechPlaybackAdapter
from ..core.latency import TurnLatencyTracer
from ..core.models import (
    ChatMessage,
    ConversationSnapshot,
    FlowState,
    LearnerProfile,
    ReasoningReply,
    RequestContext,
    TTSSettings,
    VoiceParams,
)
from ..core.state_machine import ACTIVE_PHASES, ConversationStateMachine, Phase
from .flow import FlowController
from .reasoning import ReasoningClient, fallback_reply
from .timers import CancellableTimer, DeadlineRace
from .voice import clamp_pitch, clamp_rate, voice_params

logger = logging.getLogger("speaktutor.turns")

StateCallback = Callable[[ConversationSnapshot], Any]
MessageCallback = Callable[[ChatMessage], Any]


class TurnController:
    """
    Owns the conversation state machine of one session.

    Lifecycle:
        controller = TurnController(capture, playback, reasoning, store, on_state_change=...)
        controller.toggle_session()   # IDLE → LISTENING
        ...                           # adapters feed events through dispatch()
        controller.toggle_session()   # → IDLE
        await controller.close()
    """

    def __init__(
        self,
        capture: SpeechCaptureAdapter,
        playback: SpeechPlaybackAdapter,
        reasoning: ReasoningClient,
        store: ProgressStore,
        settings: Optional[TTSSettings] = None,
        silence_timeout_s: float = turn_cfg.silence_timeout_s,
        watchdog_timeout_s: float = turn_cfg.watchdog_timeout_s,
        retry_notice_s: float = turn_cfg.retry_notice_s,
        label: str = "",
        on_state_change: Optional[StateCallback] = None,
        on_message: Optional[MessageCallback] = None,
    ) -> None:
        self._capture = capture
        self._playback = playback
        self._reasoning = reasoning
        self._store = store
        self._settings = settings or TTSSettings(
            voice_id=voice_cfg.voice_id or None,
            rate=voice_cfg.base_rate,
            pitch=voice_cfg.pitch,
        )
        self._silence_timeout_s = silence_timeout_s
        self._watchdog_timeout_s = watchdog_timeout_s
        self._retry_notice_s = retry_notice_s
        self._label = label

        # Subscribers
        self._on_state_change = on_state_change
        self._on_message = on_message

        self._sm = ConversationStateMachine(label=label)
        self._flow = FlowController(label=label)
        self._latency = TurnLatencyTracer(label=label)
        self._profile = LearnerProfile()

        # Conversation state
        self._active = False
        self._turn_id = 0
        self._committed_text = ""
        self._interim_text = ""
        self._transcript = ""
        self._last_transcript = ""
        self._last_error: Optional[str] = None
        self._notice: Optional[str] = None
        self._drill_locked = False
        self._capturing = False

        # Pending work of the current turn
        self._silence_timer: Optional[CancellableTimer] = None
        self._retry_timer: Optional[CancellableTimer] = None
        self._race: Optional[DeadlineRace] = None
        self._playback_task: Optional[asyncio.Task] = None
        self._work: Set[asyncio.Future] = set()
        self._deliveries: Set[asyncio.Future] = set()

        self._last_snapshot: Optional[ConversationSnapshot] = None

        self._handlers: Dict[type, Callable[[Any], None]] = {
            CaptureStarted: self._handle_capture_started,
            CaptureResult: self._handle_capture_result,
            CaptureError: self._handle_capture_error,
            CaptureEnded: self._handle_capture_ended,
            SilenceElapsed: self._handle_silence_elapsed,
            WatchdogElapsed: self._handle_watchdog_elapsed,
            RetryNoticeElapsed: self._handle_retry_notice_elapsed,
            ReplyReceived: self._handle_reply,
            PlaybackFinished: self._handle_playback_finished,
        }

    # ── Read-only views ─────────────────────────────────────────────────

    @property
    def phase(self) -> Phase:
        return self._sm.phase

    @property
    def is_session_active(self) -> bool:
        return self._active

    @property
    def turn_id(self) -> int:
        return self._turn_id

    @property
    def flow_state(self) -> FlowState:
        return self._flow.state

    @property
    def drill_locked(self) -> bool:
        return self._drill_locked

    @property
    def profile(self) -> LearnerProfile:
        return self._profile

    @property
    def settings(self) -> TTSSettings:
        return TTSSettings(**self._settings.to_dict())

    @property
    def phase_history(self) -> List[Dict[str, Any]]:
        return self._sm.history

    def latency_summary(self) -> Dict[str, Any]:
        return self._latency.summary()

    def snapshot(self) -> ConversationSnapshot:
        return ConversationSnapshot(
            phase=self._sm.phase,
            is_session_active=self._active,
            turn_id=self._turn_id,
            transcript=self._transcript,
            last_transcript=self._last_transcript,
            last_error=self._last_error,
            notice=self._notice,
            drill_locked=self._drill_locked,
            flow_state=self._flow.state,
        )

    # ── User actions ────────────────────────────────────────────────────

    def toggle_session(self) -> None:
        if self._active:
            self.stop_session()
        else:
            self.start_session()

    def start_session(self) -> None:
        """Opt in to continuous listening (also the way out of ERROR and PAUSED)."""
        if self._active:
            return
        if not self._capture.supported:
            self._fail_capture(UNSUPPORTED)
            self._publish()
            return

        self._active = True
        self._last_error = None
        self._notice = None
        self._arm_capture("session on")
        self._publish()

    def stop_session(self, reason: str = "session off") -> None:
        """Abort capture, timers and playback; an in-flight reply is discarded."""
        self._active = False
        self._halt()
        self._notice = None
        self._sm.transition(Phase.IDLE, reason=reason)
        self._publish()

    def pause(self) -> None:
        """Suspend the conversation; FlowState and the drill lock survive."""
        if self._sm.phase not in ACTIVE_PHASES:
            return
        self._active = False
        self._halt()
        self._notice = None
        self._sm.transition(Phase.PAUSED, reason="paused")
        self._publish()

    def resume(self) -> None:
        """Back to IDLE; the user re-opens the microphone themselves."""
        if self._sm.phase != Phase.PAUSED:
            return
        self._sm.transition(Phase.IDLE, reason="resumed")
        self._publish()

    def reset_progress(self) -> None:
        """New session: streaks and the drill lock start over."""
        self._flow.reset()
        self._drill_locked = False
        self._publish()

    def set_profile(self, profile: LearnerProfile) -> None:
        self._profile = profile

    def update_settings(
        self,
        rate: Optional[float] = None,
        pitch: Optional[float] = None,
        voice_id: Optional[str] = None,
    ) -> TTSSettings:
        if rate is not None:
            self._settings.rate = clamp_rate(float(rate))
        if pitch is not None:
            self._settings.pitch = clamp_pitch(float(pitch))
        if voice_id is not None:
            self._settings.voice_id = voice_id or None
        logger.info(f"[{self._label}] Voice settings: {self._settings.to_dict()}")
        return self.settings

    async def close(self) -> None:
        """Stop and dispose of everything still pending, including a detached call."""
        if self._active or self._sm.phase != Phase.IDLE:
            self.stop_session(reason="closed")
        work = [t for t in self._work if not t.done()]
        for task in work:
            task.cancel()
        # Subscribers still get the final state
        pending = work + [t for t in self._deliveries if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ── Single entry point ──────────────────────────────────────────────

    def dispatch(self, event: ControllerEvent) -> None:
        """Apply one event. Events from an older turn are dropped."""
        if event.turn_id != self._turn_id:
            logger.debug(
                f"[{self._label}] Dropping stale {type(event).__name__} "
                f"(turn {event.turn_id}, current {self._turn_id})"
            )
            return

        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning(f"[{self._label}] No handler for {type(event).__name__}")
            return
        handler(event)
        self._publish()

    def _capture_listener(self, turn_id: int, event: CaptureEvent) -> None:
        self.dispatch(replace(event, turn_id=turn_id))

    # ── Capture ─────────────────────────────────────────────────────────

    def _arm_capture(self, reason: str) -> None:
        """Start a new turn: fresh turn id, empty accumulator, capture running."""
        self._new_turn()
        self._clear_transcript()
        if self._capturing:
            self._safe_capture_call("abort")

        turn_id = self._turn_id
        self._sm.transition(Phase.LISTENING, reason=reason)
        self._latency.begin(turn_id)
        try:
            self._capture.start(partial(self._capture_listener, turn_id))
            self._capturing = True
        except Exception as e:
            logger.error(f"[{self._label}] Capture start failed: {e}")
            self._fail_capture(UNSUPPORTED)

    def _handle_capture_started(self, event: CaptureStarted) -> None:
        if self._sm.phase == Phase.LISTENING:
            self._last_error = None
            logger.debug(f"[{self._label}] Capture started (turn {event.turn_id})")

    def _handle_capture_result(self, event: CaptureResult) -> None:
        if self._sm.phase != Phase.LISTENING:
            return

        if event.is_final:
            self._committed_text += event.text + " "
            self._interim_text = ""
        else:
            self._interim_text = event.text

        combined = self._normalize_text(self._committed_text + self._interim_text)
        changed = combined != self._transcript
        self._transcript = combined

        # The quiet period restarts only when there is new text
        if combined and changed:
            self._restart_silence_timer()

    def _handle_capture_error(self, event: CaptureError) -> None:
        if is_fatal_capture_code(event.code):
            self._fail_capture(event.code)
            return
        # Benign: the recognizer will end the run and we re-arm from there
        logger.info(f"[{self._label}] Capture reported '{event.code}'")

    def _handle_capture_ended(self, event: CaptureEnded) -> None:
        self._capturing = False
        if self._sm.phase == Phase.LISTENING:
            self._finalize("capture ended")

    def _handle_silence_elapsed(self, event: SilenceElapsed) -> None:
        if self._sm.phase != Phase.LISTENING:
            return
        self._safe_capture_call("stop")
        # stop() may deliver CaptureEnded synchronously, which finalizes the turn
        if self._turn_id == event.turn_id and self._sm.phase == Phase.LISTENING:
            self._finalize("silence")

    def _restart_silence_timer(self) -> None:
        if self._silence_timer is None:
            self._silence_timer = CancellableTimer(
                self._silence_timeout_s,
                partial(self.dispatch, SilenceElapsed(turn_id=self._turn_id)),
                name=f"silence-{self._turn_id}",
            )
        self._silence_timer.restart()

    # ── Finalization ────────────────────────────────────────────────────

    def _finalize(self, reason: str) -> None:
        """Close the current utterance. Runs at most once per turn."""
        self._cancel_timer("_silence_timer")
        text = self._transcript.strip()
        self._clear_transcript()

        if not text:
            # Silence only is not a turn
            logger.debug(f"[{self._label}] Empty utterance ({reason}), listening again")
            self._arm_capture("empty utterance")
            return

        turn_id = self._turn_id
        self._last_transcript = text
        self._sm.transition(Phase.PROCESSING, reason=reason)
        self._latency.mark("utterance_finalized")
        self._emit(self._on_message, ChatMessage(id=uuid.uuid4().hex[:8], role="user", text=text))

        self._race = DeadlineRace(
            self._run_turn(text, turn_id),
            self._watchdog_timeout_s,
            on_settled=partial(self._turn_settled, turn_id, text),
            on_timeout=partial(self.dispatch, WatchdogElapsed(turn_id=turn_id)),
            name=f"turn-{turn_id}",
        ).start()
        self._track(self._work, self._race.task)

    # ── Reasoning ───────────────────────────────────────────────────────

    async def _run_turn(self, text: str, turn_id: int) -> Tuple[ReasoningReply, int]:
        """Everything between the finalized utterance and the reply; bounded by the watchdog."""
        profile = await self._load_profile()
        context = RequestContext(
            target_level=profile.level,
            topic=profile.topic,
            flow_state=self._flow.state,
            is_drill_retry=self._drill_locked,
            vocabulary_size=profile.vocabulary_size,
            recent_topics=profile.recent_topics,
        )
        reply = await self._reasoning.send(text, context)

        new_words = 0
        # A discarded turn earns nothing
        if reply.assessment.is_perfect and not reply.degraded and turn_id == self._turn_id:
            new_words = await self._submit_sentence(text)
        return reply, new_words

    async def _load_profile(self) -> LearnerProfile:
        try:
            self._profile = await self._store.load_profile()
        except Exception as e:
            logger.warning(f"[{self._label}] Profile load failed, using cached profile: {e}")
        return self._profile

    async def _submit_sentence(self, text: str) -> int:
        try:
            return await self._store.submit_sentence(text)
        except Exception as e:
            logger.warning(f"[{self._label}] Progress update failed: {e}")
            return 0

    def _turn_settled(self, turn_id: int, text: str, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # Only capture failures stop the conversation
            logger.error(f"[{self._label}] Turn {turn_id} failed, answering with fallback: {exc!r}")
            self.dispatch(ReplyReceived(utterance=text, reply=fallback_reply(), turn_id=turn_id))
            return
        reply, new_words = task.result()
        self.dispatch(ReplyReceived(utterance=text, reply=reply, new_words=new_words, turn_id=turn_id))

    def _handle_watchdog_elapsed(self, event: WatchdogElapsed) -> None:
        if self._sm.phase != Phase.PROCESSING:
            return
        logger.warning(
            f"[{self._label}] Watchdog: no reply within {self._watchdog_timeout_s:.1f}s, "
            f"abandoning turn {event.turn_id}"
        )
        self._race = None
        self._notice = RETRY_NOTICE
        self._retry_timer = CancellableTimer(
            self._retry_notice_s,
            partial(self.dispatch, RetryNoticeElapsed(turn_id=event.turn_id)),
            name=f"retry-{event.turn_id}",
        )
        self._retry_timer.start()

    def _handle_retry_notice_elapsed(self, event: RetryNoticeElapsed) -> None:
        if self._sm.phase != Phase.PROCESSING:
            return
        self._retry_timer = None
        self._notice = None
        if self._active:
            self._arm_capture("watchdog retry")
        else:
            self._sm.transition(Phase.IDLE, reason="watchdog retry")

    def _handle_reply(self, event: ReplyReceived) -> None:
        if self._sm.phase != Phase.PROCESSING:
            return
        self._race = None
        self._latency.mark("reply_received")

        reply = event.reply
        assessment = reply.assessment
        self._flow.record(assessment, "" if reply.degraded else event.utterance)
        self._apply_drill_lock(assessment.is_perfect)

        self._emit(self._on_message, ChatMessage(
            id=uuid.uuid4().hex[:8],
            role="assistant",
            text=reply.reply,
            assessment=assessment,
            xp_gained=event.new_words,
        ))
        self._speak(reply.reply)

    def _apply_drill_lock(self, is_perfect: bool) -> None:
        if not is_perfect and not self._drill_locked:
            self._drill_locked = True
            logger.info(f"[{self._label}] DRILL LOCK on: next attempt is a corrective retry")
        elif is_perfect and self._drill_locked:
            self._drill_locked = False
            logger.info(f"[{self._label}] DRILL LOCK off")

    # ── Playback ────────────────────────────────────────────────────────

    def _speak(self, text: str) -> None:
        turn_id = self._turn_id
        voice = voice_params(self._settings, self._profile.level, self._flow.mode)
        self._sm.transition(Phase.SPEAKING, reason="reply")
        self._latency.mark("playback_started")
        self._playback_task = asyncio.create_task(
            self._play(text, voice, turn_id), name=f"playback-{self._label}-{turn_id}"
        )
        self._track(self._work, self._playback_task)

    async def _play(self, text: str, voice: VoiceParams, turn_id: int) -> None:
        try:
            await self._playback.speak(text, voice)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # A failed utterance still hands the turn back to the user
            logger.warning(f"[{self._label}] Playback failed: {e}")
            self.dispatch(PlaybackFinished(error=str(e), turn_id=turn_id))
            return
        self.dispatch(PlaybackFinished(turn_id=turn_id))

    def _handle_playback_finished(self, event: PlaybackFinished) -> None:
        if self._sm.phase != Phase.SPEAKING:
            return
        self._playback_task = None
        self._latency.mark("playback_finished")
        if self._active:
            self._arm_capture("playback finished")
        else:
            self._sm.transition(Phase.IDLE, reason="playback finished")

    def _cancel_playback(self) -> None:
        task = self._playback_task
        self._playback_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                self._playback.cancel()
            except Exception as e:
                logger.warning(f"[{self._label}] Playback cancel failed: {e}")

    # ── Failure / teardown ──────────────────────────────────────────────

    def _fail_capture(self, code: str) -> None:
        message = capture_error_message(code)
        logger.error(f"[{self._label}] Capture fatal '{code}': {message}")
        self._active = False
        self._halt()
        self._notice = None
        self._last_error = message
        self._sm.transition(Phase.ERROR, reason=code)

    def _halt(self) -> None:
        """Invalidate the current turn and stop everything it started."""
        self._new_turn()
        if self._capturing:
            self._safe_capture_call("abort")
        self._cancel_playback()
        self._clear_transcript()

    def _new_turn(self) -> None:
        self._turn_id += 1
        self._cancel_timer("_silence_timer")
        self._cancel_timer("_retry_timer")
        if self._race is not None:
            # The call may finish, but its turn id is now stale
            self._race.detach()
            self._race = None

    def _cancel_timer(self, attr: str) -> None:
        timer = getattr(self, attr)
        if timer is not None:
            timer.cancel()
            setattr(self, attr, None)

    def _safe_capture_call(self, method: str) -> None:
        try:
            getattr(self._capture, method)()
        except Exception as e:
            logger.warning(f"[{self._label}] Capture {method} failed: {e}")
        if method == "abort":
            self._capturing = False

    def _clear_transcript(self) -> None:
        self._committed_text = ""
        self._interim_text = ""
        self._transcript = ""

    @staticmethod
    def _normalize_text(text: str) -> str:
        """Normalize spacing and punctuation for merged transcript text."""
        cleaned = " ".join(text.split())
        cleaned = re.sub(r"\s+([,.!?;:])", r"\1", cleaned)
        return cleaned.strip()

    # ── Subscribers ─────────────────────────────────────────────────────

    def _publish(self) -> None:
        if self._on_state_change is None:
            return
        snap = self.snapshot()
        if snap == self._last_snapshot:
            return
        self._last_snapshot = snap
        self._emit(self._on_state_change, snap)

    def _emit(self, callback: Optional[Callable[[Any], Any]], payload: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(payload)
        except Exception as e:
            logger.error(f"[{self._label}] Subscriber error: {e}")
            return
        if asyncio.iscoroutine(result):
            self._track(self._deliveries, asyncio.ensure_future(result))

    @staticmethod
    def _track(tasks: Set[asyncio.Future], task: Optional[asyncio.Future]) -> None:
        if task is None:
            return
        tasks.add(task)
        task.add_done_callback(tasks.discard)
