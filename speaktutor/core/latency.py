"""
SpeakTutor — Turn Latency Tracer

Records wall-clock timestamps for the milestones of each turn:
  capture_armed → utterance_finalized → reply_received → playback_started → playback_finished

Computes and logs the deltas between milestones.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger("speaktutor.latency")

_MILESTONES = (
    "capture_armed", "utterance_finalized", "reply_received",
    "playback_started", "playback_finished",
)


@dataclass
class TurnLatencyTrace:
    """Milestones of one turn (wall-clock seconds, 0 = not reached)."""

    turn_id: int = 0

    capture_armed: float = 0.0
    utterance_finalized: float = 0.0
    reply_received: float = 0.0
    playback_started: float = 0.0
    playback_finished: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"turn_id": self.turn_id}
        for name in _MILESTONES:
            ts = getattr(self, name)
            if ts > 0:
                d[name] = ts
        d["deltas"] = self.deltas()
        return d

    def deltas(self) -> Dict[str, Optional[float]]:
        """Latency deltas between milestones (milliseconds)."""
        def _delta(a: float, b: float) -> Optional[float]:
            if a > 0 and b > 0:
                return round((b - a) * 1000, 1)
            return None

        return {
            "speaking_ms": _delta(self.capture_armed, self.utterance_finalized),
            "reasoning_ms": _delta(self.utterance_finalized, self.reply_received),
            "reply_to_voice_ms": _delta(self.reply_received, self.playback_started),
            "playback_ms": _delta(self.playback_started, self.playback_finished),
            "finalize_to_voice_ms": _delta(self.utterance_finalized, self.playback_started),
        }


class TurnLatencyTracer:
    """
    Keeps the trace of the current turn and logs each milestone.

    Usage:
        tracer = TurnLatencyTracer("session-abc")
        tracer.begin(turn_id)
        tracer.mark("utterance_finalized")
        tracer.mark("reply_received")
    """

    def __init__(self, label: str = "") -> None:
        self._label = label
        self._trace = TurnLatencyTrace()
        self._completed: Optional[TurnLatencyTrace] = None

    @property
    def trace(self) -> TurnLatencyTrace:
        return self._trace

    def begin(self, turn_id: int) -> None:
        """Start a fresh trace; the previous one is kept if it produced a reply."""
        if self._trace.reply_received > 0:
            self._completed = self._trace
        self._trace = TurnLatencyTrace(turn_id=turn_id, capture_armed=time.time())

    def mark(self, milestone: str) -> None:
        if milestone not in _MILESTONES:
            raise ValueError(f"Unknown latency milestone: {milestone}")
        if getattr(self._trace, milestone) > 0:
            return  # Already marked
        setattr(self._trace, milestone, time.time())
        deltas = self._trace.deltas()
        logger.info(
            f"[{self._label}] LATENCY turn={self._trace.turn_id} {milestone} "
            f"(reasoning: {deltas['reasoning_ms']}ms, "
            f"finalize→voice: {deltas['finalize_to_voice_ms']}ms)"
        )

    def summary(self) -> Dict[str, Any]:
        """Most recent turn that got as far as a reply, else the current one."""
        if self._trace.reply_received > 0 or self._completed is None:
            return self._trace.to_dict()
        return self._completed.to_dict()
