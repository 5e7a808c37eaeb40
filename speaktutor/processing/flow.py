"""
SpeakTutor — Difficulty / Tone Controller (DDA)

Turns the stream of assessment scores into a tone for the tutor:

  • CHALLENGE — three good answers in a row; speak faster, push back.
  • SUPPORT   — two bad answers in a row; slow down and give hints.
  • NEUTRAL   — everything else.

`advance_flow` is the whole policy and is pure. `FlowController` only owns
the current FlowState and applies the policy once per assessment.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from ..core.models import Assessment, FlowMode, FlowState

logger = logging.getLogger("speaktutor.flow")

GOOD_SCORE = 8            # at or above: extends the combo
BAD_SCORE = 6             # below: extends the mistake streak
CHALLENGE_COMBO = 3
SUPPORT_MISTAKES = 2


def derive_mode(combo_count: int, mistake_count: int) -> FlowMode:
    # Combo takes precedence
    if combo_count >= CHALLENGE_COMBO:
        return FlowMode.CHALLENGE
    if mistake_count >= SUPPORT_MISTAKES:
        return FlowMode.SUPPORT
    return FlowMode.NEUTRAL


def advance_flow(state: FlowState, score: int) -> FlowState:
    """New FlowState after one assessment score."""
    combo = state.combo_count
    mistakes = state.mistake_count

    if score >= GOOD_SCORE:
        combo += 1
        mistakes = 0
    elif score < BAD_SCORE:
        mistakes += 1
        combo = 0
    else:
        # A mediocre answer breaks the streak but is not a mistake
        combo = 0

    return replace(
        state,
        combo_count=combo,
        mistake_count=mistakes,
        current_mode=derive_mode(combo, mistakes),
    )


def count_words(text: str) -> int:
    return len(text.split())


class FlowController:
    """Owns the session's FlowState."""

    def __init__(self, label: str = "") -> None:
        self._label = label
        self._state = FlowState()

    @property
    def state(self) -> FlowState:
        return self._state

    @property
    def mode(self) -> FlowMode:
        return self._state.current_mode

    def reset(self) -> None:
        """Session start — the only time the streaks are cleared."""
        self._state = FlowState()

    def record(self, assessment: Assessment, utterance: str = "") -> FlowState:
        """
        Apply one assessment. A perfect answer also adds the utterance's
        words to the session word count.
        """
        prev = self._state
        state = advance_flow(prev, assessment.final_score)
        if assessment.is_perfect and utterance:
            state = replace(state, session_word_count=state.session_word_count + count_words(utterance))
        self._state = state

        if state.current_mode != prev.current_mode:
            logger.info(
                f"[{self._label}] MODE: {prev.current_mode.value} → {state.current_mode.value} "
                f"(combo={state.combo_count}, mistakes={state.mistake_count})"
            )
        return state
