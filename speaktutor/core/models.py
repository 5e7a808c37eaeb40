"""
SpeakTutor — Data Models

Dataclasses for every piece of data flowing through the system.
Values handed across component boundaries are frozen; the only mutable
records are owned by the turn controller and the session.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .state_machine import Phase

MIN_SCORE = 0
MAX_SCORE = 10


def clamp_score(value: Any) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, int(value)))


class CEFRLevel(str, Enum):
    A1 = "A1"
    A2 = "A2"
    B1 = "B1"
    B2 = "B2"
    C1 = "C1"
    C2 = "C2"


class FlowMode(str, Enum):
    """Tone the tutor takes, derived from the learner's recent streak."""
    NEUTRAL = "neutral"
    CHALLENGE = "challenge"   # on a streak of good answers
    SUPPORT = "support"       # struggling, slow down and hint


# ---------------------------------------------------------------------------
# Assessment
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Assessment:
    """Scored result of one utterance. Scores are clamped to 0–10."""
    grammar_score: int = MAX_SCORE
    phonetic_score: int = MAX_SCORE
    final_score: int = MAX_SCORE
    correction: Optional[str] = None
    explanation: Optional[str] = None
    word_count: int = 0

    def __post_init__(self) -> None:
        for name in ("grammar_score", "phonetic_score", "final_score"):
            object.__setattr__(self, name, clamp_score(getattr(self, name)))
        object.__setattr__(self, "word_count", max(0, int(self.word_count)))

    @property
    def is_perfect(self) -> bool:
        return self.final_score == MAX_SCORE

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["is_perfect"] = self.is_perfect
        return d


@dataclass(frozen=True)
class ReasoningReply:
    """What the reasoning service returns for one turn."""
    reply: str
    assessment: Assessment
    degraded: bool = False   # True when this is the local fallback

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reply": self.reply,
            "assessment": self.assessment.to_dict(),
            "degraded": self.degraded,
        }


# ---------------------------------------------------------------------------
# Difficulty / tone state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FlowState:
    combo_count: int = 0
    mistake_count: int = 0
    current_mode: FlowMode = FlowMode.NEUTRAL
    session_word_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Learner context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LearnerProfile:
    """Long-lived learner data read from the persistence collaborator."""
    # Level chosen for the current session; prompts and playback follow it
    level: CEFRLevel = CEFRLevel.A1
    # Level implied by the vocabulary the learner has produced so far
    progress_level: CEFRLevel = CEFRLevel.A1
    topic: str = "General"
    vocabulary_size: int = 0
    recent_topics: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["recent_topics"] = list(self.recent_topics)
        return d


@dataclass(frozen=True)
class RequestContext:
    """Everything the reasoning service gets besides the utterance itself."""
    target_level: CEFRLevel
    topic: str
    flow_state: FlowState
    is_drill_retry: bool = False
    vocabulary_size: int = 0
    recent_topics: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "targetLevel": self.target_level.value,
            "topic": self.topic,
            "isDrillRetry": self.is_drill_retry,
            "flowState": {
                "comboCount": self.flow_state.combo_count,
                "mistakeCount": self.flow_state.mistake_count,
                "currentMode": self.flow_state.current_mode.value,
                "sessionWordCount": self.flow_state.session_word_count,
            },
            "userVocabularySize": self.vocabulary_size,
            "userPastTopics": list(self.recent_topics),
        }


# ---------------------------------------------------------------------------
# Voice
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VoiceParams:
    rate: float
    pitch: float
    voice_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TTSSettings:
    """User-tunable playback settings; the rate here is the base rate."""
    voice_id: Optional[str] = None
    rate: float = 0.9
    pitch: float = 1.05

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Chat / Conversation models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChatMessage:
    """A single message in the conversation history."""
    id: str = ""
    role: str = "assistant"      # "user" | "assistant"
    text: str = ""
    assessment: Optional[Assessment] = None
    xp_gained: int = 0           # new unique words credited for this turn
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "assessment": self.assessment.to_dict() if self.assessment else None,
            "xp_gained": self.xp_gained,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ConversationSnapshot:
    """Read-only view of the controller state handed to subscribers."""
    phase: Phase = Phase.IDLE
    is_session_active: bool = False
    turn_id: int = 0
    transcript: str = ""
    last_transcript: str = ""
    last_error: Optional[str] = None
    notice: Optional[str] = None
    drill_locked: bool = False
    flow_state: FlowState = field(default_factory=FlowState)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["phase"] = self.phase.value
        return d
