"""
SpeakTutor — Collaborator Interfaces

Protocol definitions for everything the turn controller talks to but does
not own:
  1. Capture    — continuous speech-to-text
  2. Playback   — text-to-speech
  3. Reasoning  — the remote tutor model (transport level)
  4. Progress   — persistence of the learner's profile and vocabulary

The controller only talks to its collaborators through these protocols,
so tests can swap in fakes.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Protocol, runtime_checkable

from .events import CaptureEvent
from .models import CEFRLevel, LearnerProfile, RequestContext, VoiceParams

CaptureListener = Callable[[CaptureEvent], None]


# ═══════════════════════════════════════════════════════════════════════════
# Capture — continuous speech recognition
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class SpeechCaptureAdapter(Protocol):
    """Continuous, interim-result speech recognition for one locale."""

    @property
    def supported(self) -> bool:
        """False when the environment has no usable recognizer."""
        ...

    def start(self, listener: CaptureListener) -> None:
        """Begin a capture run; every event of the run goes to `listener`."""
        ...

    def stop(self) -> None:
        """Stop gracefully; pending results are delivered, then CaptureEnded."""
        ...

    def abort(self) -> None:
        """Stop immediately and drop pending results."""
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Playback — speech synthesis
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class SpeechPlaybackAdapter(Protocol):

    async def speak(self, text: str, voice: VoiceParams) -> None:
        """Speak `text`; returns when playback ends, raises if it fails."""
        ...

    def cancel(self) -> None:
        """Stop the utterance in progress, if any."""
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Reasoning — transport to the remote tutor model
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class ReasoningTransport(Protocol):

    async def complete(self, utterance: str, context: RequestContext) -> Dict[str, Any]:
        """
        One attempt against the service. Returns the raw JSON assessment
        payload; raises ReasoningServiceError on a classified failure.
        """
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Progress — persistence collaborator
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class ProgressStore(Protocol):

    async def begin_session(self, topic: str, level: CEFRLevel) -> None:
        """Record that a new session on `topic` at `level` has started."""
        ...

    async def load_profile(self) -> LearnerProfile:
        """Current level, topic, vocabulary size and recent topics."""
        ...

    async def submit_sentence(self, text: str) -> int:
        """Credit a correct sentence; returns how many words were new."""
        ...
