"""
SpeakTutor — Progress store

In-memory learner progress: the unique vocabulary the learner has produced
in correct sentences, the topics of recent sessions and the progress level
the vocabulary implies. The level chosen for a session is kept apart from
progress. Stands in for a persistent backend with the same protocol.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Set

from ..core.models import CEFRLevel, LearnerProfile

logger = logging.getLogger("speaktutor.store")

WORDS_PER_LEVEL = 700
MAX_RECENT_TOPICS = 5

_LEVELS: List[CEFRLevel] = list(CEFRLevel)
_WORD_RE = re.compile(r"[a-z']+")


def extract_words(text: str) -> Set[str]:
    """Lower-cased word forms in `text`, punctuation stripped."""
    words = set()
    for token in _WORD_RE.findall(text.lower()):
        token = token.strip("'")
        if token:
            words.add(token)
    return words


def level_for_vocabulary(vocabulary_size: int, floor: CEFRLevel = CEFRLevel.A1) -> CEFRLevel:
    """One level up per WORDS_PER_LEVEL unique words, never below `floor`."""
    index = min(vocabulary_size // WORDS_PER_LEVEL, len(_LEVELS) - 1)
    return _LEVELS[max(index, _LEVELS.index(floor))]


class InMemoryProgressStore:
    """ProgressStore kept in process memory, one learner per instance."""

    def __init__(
        self,
        level: CEFRLevel = CEFRLevel.A1,
        vocabulary: Optional[Set[str]] = None,
        recent_topics: Optional[List[str]] = None,
    ) -> None:
        self._start_level = level
        self._session_level = level
        self._topic = "General"
        self._vocabulary: Set[str] = set(vocabulary or ())
        self._recent_topics: List[str] = list(recent_topics or [])[:MAX_RECENT_TOPICS]
        self.sentences_credited = 0

    @property
    def vocabulary_size(self) -> int:
        return len(self._vocabulary)

    @property
    def progress_level(self) -> CEFRLevel:
        return level_for_vocabulary(len(self._vocabulary), floor=self._start_level)

    @property
    def words_to_next_level(self) -> int:
        if self.progress_level == _LEVELS[-1]:
            return 0
        target = (_LEVELS.index(self.progress_level) + 1) * WORDS_PER_LEVEL
        return max(0, target - len(self._vocabulary))

    async def begin_session(self, topic: str, level: CEFRLevel) -> None:
        topic = topic.strip() or "General"
        self._topic = topic
        self._session_level = level
        # Most recent first, distinct
        self._recent_topics = [topic] + [t for t in self._recent_topics if t != topic]
        del self._recent_topics[MAX_RECENT_TOPICS:]
        logger.info(f"Session topic '{topic}' at {level.value}")

    async def load_profile(self) -> LearnerProfile:
        return LearnerProfile(
            level=self._session_level,
            progress_level=self.progress_level,
            topic=self._topic,
            vocabulary_size=len(self._vocabulary),
            recent_topics=tuple(self._recent_topics),
        )

    async def submit_sentence(self, text: str) -> int:
        before = self.progress_level
        new_words = extract_words(text) - self._vocabulary
        self._vocabulary |= new_words
        self.sentences_credited += 1
        if self.progress_level != before:
            logger.info(f"LEVEL UP: {before.value} → {self.progress_level.value} ({len(self._vocabulary)} words)")
        return len(new_words)
