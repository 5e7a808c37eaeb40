"""
SpeakTutor — Controller Events

Everything that can happen to a turn arrives at the turn controller as one
of these typed events, through a single entry point. Each event carries the
turn id it belongs to; the controller drops events whose turn id is stale.

Adapters emit the capture events without a turn id; the controller stamps
them with the id of the capture run they were started for.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from .models import ReasoningReply


# ── Speech capture ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class CaptureStarted:
    turn_id: int = 0


@dataclass(frozen=True)
class CaptureResult:
    text: str = ""
    is_final: bool = False
    turn_id: int = 0


@dataclass(frozen=True)
class CaptureError:
    code: str = ""
    turn_id: int = 0


@dataclass(frozen=True)
class CaptureEnded:
    turn_id: int = 0


CaptureEvent = Union[CaptureStarted, CaptureResult, CaptureError, CaptureEnded]


# ── Timers ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SilenceElapsed:
    turn_id: int = 0


@dataclass(frozen=True)
class WatchdogElapsed:
    turn_id: int = 0


@dataclass(frozen=True)
class RetryNoticeElapsed:
    turn_id: int = 0


# ── Reasoning ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ReplyReceived:
    utterance: str
    reply: ReasoningReply
    new_words: int = 0       # credited by the progress store
    turn_id: int = 0


# ── Playback ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PlaybackFinished:
    error: Optional[str] = None
    turn_id: int = 0


ControllerEvent = Union[
    CaptureStarted, CaptureResult, CaptureError, CaptureEnded,
    SilenceElapsed, WatchdogElapsed, RetryNoticeElapsed,
    ReplyReceived,
    PlaybackFinished,
]
