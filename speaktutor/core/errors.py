"""
SpeakTutor — Error codes, user-facing messages and exceptions.
"""

from __future__ import annotations

from typing import Optional

# ---------------------------------------------------------------------------
# Capture error codes (as reported by the browser speech engine)
# ---------------------------------------------------------------------------

NOT_ALLOWED = "not-allowed"
SERVICE_NOT_ALLOWED = "service-not-allowed"
AUDIO_CAPTURE = "audio-capture"
NO_SPEECH = "no-speech"
ABORTED = "aborted"
NETWORK = "network"
UNSUPPORTED = "unsupported"

# A fatal code ends the session; anything else is followed by a normal
# capture end and the turn simply re-arms.
FATAL_CAPTURE_CODES = frozenset({
    NOT_ALLOWED, SERVICE_NOT_ALLOWED, AUDIO_CAPTURE, UNSUPPORTED,
})

CAPTURE_ERROR_MESSAGES = {
    NOT_ALLOWED: "Microphone permission denied.",
    SERVICE_NOT_ALLOWED: "Speech recognition is blocked in this browser.",
    AUDIO_CAPTURE: "No microphone was found.",
    UNSUPPORTED: "Browser not supported. Use Chrome/Edge/Safari.",
}

# ---------------------------------------------------------------------------
# Notices
# ---------------------------------------------------------------------------

RETRY_NOTICE = "Network slow... trying again"


def is_fatal_capture_code(code: str) -> bool:
    return code in FATAL_CAPTURE_CODES


def capture_error_message(code: str) -> str:
    return CAPTURE_ERROR_MESSAGES.get(code, f"Speech capture failed ({code}).")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class IllegalTransitionError(ValueError):
    """Raised when the conversation state machine is asked for an illegal move."""


class ReasoningServiceError(Exception):
    """A failed call to the reasoning service, classified for retry."""

    RETRYABLE_STATUSES = frozenset({429, 503})

    def __init__(self, message: str, status: Optional[int] = None, retryable: Optional[bool] = None) -> None:
        super().__init__(message)
        self.status = status
        if retryable is None:
            retryable = status in self.RETRYABLE_STATUSES
        self.retryable = retryable


class ReasoningConfigError(Exception):
    """The reasoning service cannot be reached at all (e.g. no credentials)."""
