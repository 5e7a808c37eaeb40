"""
SpeakTutor — Conversation State Machine

Enforces the turn lifecycle: IDLE → LISTENING → PROCESSING → SPEAKING → IDLE,
with PAUSED and ERROR branches.
All phase changes go through this module so illegitimate phases
are impossible and every transition is logged.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Dict, List, Set

from .errors import IllegalTransitionError

logger = logging.getLogger("speaktutor.state")


class Phase(str, Enum):
    """Exactly one is active at a time."""
    IDLE = "idle"                # Session off, microphone closed
    LISTENING = "listening"      # Capture armed, accumulating the utterance
    PROCESSING = "processing"    # Utterance sent, waiting on the tutor model
    SPEAKING = "speaking"        # Reply being played back
    PAUSED = "paused"            # Suspended by the user
    ERROR = "error"              # Capture unusable until the user restarts


ACTIVE_PHASES = frozenset({Phase.LISTENING, Phase.PROCESSING, Phase.SPEAKING})


# Legal phase transitions
_TRANSITIONS: Dict[Phase, Set[Phase]] = {
    Phase.IDLE:       {Phase.LISTENING, Phase.ERROR},
    Phase.LISTENING:  {Phase.PROCESSING, Phase.IDLE, Phase.PAUSED, Phase.ERROR},
    Phase.PROCESSING: {Phase.SPEAKING, Phase.LISTENING, Phase.IDLE, Phase.PAUSED, Phase.ERROR},
    Phase.SPEAKING:   {Phase.LISTENING, Phase.IDLE, Phase.PAUSED, Phase.ERROR},
    Phase.PAUSED:     {Phase.IDLE, Phase.LISTENING},
    Phase.ERROR:      {Phase.IDLE, Phase.LISTENING},
}


class ConversationStateMachine:
    """
    Enforces legal phase transitions and keeps their history.

    Usage:
        sm = ConversationStateMachine(label="abc123")
        sm.transition(Phase.LISTENING)     # OK
        sm.transition(Phase.PROCESSING)    # OK
        sm.transition(Phase.PAUSED)        # OK
        sm.transition(Phase.SPEAKING)      # illegal from PAUSED → raises
    """

    def __init__(self, label: str = "") -> None:
        self._phase = Phase.IDLE
        self._label = label
        self._history: List[Dict] = []
        self._entered_at = time.time()

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def history(self) -> List[Dict]:
        return list(self._history)

    def transition(self, target: Phase, reason: str = "") -> None:
        """
        Attempt a phase transition. Raises IllegalTransitionError on illegal moves.
        """
        if target == self._phase:
            return  # Idempotent — no-op for same phase

        allowed = _TRANSITIONS.get(self._phase, set())
        if target not in allowed:
            raise IllegalTransitionError(
                f"Illegal phase transition: {self._phase.value} → {target.value}. "
                f"Allowed from {self._phase.value}: {sorted(s.value for s in allowed)}. "
                f"Reason: {reason}"
            )

        prev = self._phase
        now = time.time()
        self._history.append({
            "from": prev.value,
            "to": target.value,
            "reason": reason,
            "timestamp": now,
            "duration_in_prev_ms": round((now - self._entered_at) * 1000, 1),
        })
        self._phase = target
        self._entered_at = now

        prefix = f"[{self._label}] " if self._label else ""
        logger.info(
            f"{prefix}PHASE: {prev.value} → {target.value}"
            + (f" ({reason})" if reason else "")
        )
