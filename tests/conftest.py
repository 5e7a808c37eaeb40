from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from speaktutor.core.events import CaptureEnded, CaptureResult
from speaktutor.core.models import ConversationSnapshot, RequestContext, VoiceParams
from speaktutor.processing.reasoning import ReasoningClient
from speaktutor.processing.turn_controller import TurnController
from speaktutor.services.store import InMemoryProgressStore

SILENCE_S = 0.05
WATCHDOG_S = 0.2
RETRY_NOTICE_S = 0.05


def assessment_payload(score: int, reply: str = "Nice! What else?", correction: Optional[str] = None) -> Dict[str, Any]:
    return {
        "grammarScore": score,
        "phoneticsScore": score,
        "finalScore": score,
        "correction": correction,
        "explanation": None,
        "reply": reply,
        "wordCount": 4,
    }


class FakeCapture:
    def __init__(self, supported: bool = True) -> None:
        self.supported = supported
        self.listener = None
        self.runs = 0
        self.stops = 0
        self.aborts = 0

    def start(self, listener) -> None:  # noqa: ANN001
        self.listener = listener
        self.runs += 1

    def stop(self) -> None:
        self.stops += 1

    def abort(self) -> None:
        self.aborts += 1
        self.listener = None

    def emit(self, event) -> None:  # noqa: ANN001
        assert self.listener is not None
        self.listener(event)

    def say(self, text: str, final: bool = True) -> None:
        self.emit(CaptureResult(text=text, is_final=final))

    def end(self) -> None:
        self.emit(CaptureEnded())


class FakePlayback:
    def __init__(self, fail: bool = False, hold: bool = False) -> None:
        self.fail = fail
        self.hold = hold
        self.spoken: List[tuple[str, VoiceParams]] = []
        self.cancels = 0
        self._release = asyncio.Event()

    async def speak(self, text: str, voice: VoiceParams) -> None:
        self.spoken.append((text, voice))
        if self.hold:
            await self._release.wait()
        if self.fail:
            raise RuntimeError("synthesis failed")

    def release(self) -> None:
        self._release.set()

    def cancel(self) -> None:
        self.cancels += 1


class FakeTransport:
    """Answers from a script: payload dicts, exceptions to raise, or "hang"."""

    def __init__(self, *script: Any) -> None:
        self.script = list(script)
        self.calls: List[tuple[str, RequestContext]] = []
        self.gate = asyncio.Event()

    async def complete(self, utterance: str, context: RequestContext) -> Dict[str, Any]:
        self.calls.append((utterance, context))
        item = self.script.pop(0) if self.script else assessment_payload(10)
        if item == "hang":
            await self.gate.wait()
            item = assessment_payload(10, reply="Too late")
        if isinstance(item, BaseException):
            raise item
        return item


class FailingStore:
    async def begin_session(self, topic, level) -> None:  # noqa: ANN001
        raise RuntimeError("store offline")

    async def load_profile(self):
        raise RuntimeError("store offline")

    async def submit_sentence(self, text: str) -> int:
        raise RuntimeError("store offline")


async def no_sleep(_delay: float) -> None:
    return None


async def settle(seconds: float = 0.0) -> None:
    """Let timers and callbacks scheduled on the loop run."""
    await asyncio.sleep(seconds)
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.fixture
def capture() -> FakeCapture:
    return FakeCapture()


@pytest.fixture
def playback() -> FakePlayback:
    return FakePlayback()


@pytest.fixture
def store() -> InMemoryProgressStore:
    return InMemoryProgressStore()


@pytest.fixture
def make_controller(capture, playback, store):

    def _make(transport: FakeTransport, **kwargs: Any) -> TurnController:
        snapshots: List[ConversationSnapshot] = []
        messages: list = []
        kwargs.setdefault("silence_timeout_s", SILENCE_S)
        kwargs.setdefault("watchdog_timeout_s", WATCHDOG_S)
        kwargs.setdefault("retry_notice_s", RETRY_NOTICE_S)
        controller = TurnController(
            kwargs.pop("capture", capture),
            kwargs.pop("playback", playback),
            ReasoningClient(transport, sleep=no_sleep, label="test"),
            kwargs.pop("store", store),
            label="test",
            on_state_change=snapshots.append,
            on_message=messages.append,
            **kwargs,
        )
        controller.snapshots = snapshots
        controller.messages = messages
        return controller

    return _make
