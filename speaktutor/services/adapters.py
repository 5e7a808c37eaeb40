"""
SpeakTutor — WebSocket speech adapters

The browser owns the microphone and the speaker: it runs the actual speech
recognition and synthesis. These adapters bridge the turn controller to it
over the session's WebSocket.

  • WebSocketCaptureAdapter  — sends `capture` commands, feeds the client's
                               capture_* messages back as CaptureEvents.
  • WebSocketPlaybackAdapter — sends `speak`, resolves when the client
                               reports `playback_end` / `playback_error`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from ..core.config import turn_cfg
from ..core.events import CaptureEnded, CaptureEvent
from ..core.interfaces import CaptureListener
from ..core.models import VoiceParams

logger = logging.getLogger("speaktutor.adapters")

SendFn = Callable[[Dict[str, Any]], Awaitable[None]]


class PlaybackFailed(RuntimeError):
    """The client could not speak the utterance."""


class _Outbox:
    """Fire-and-forget sends from synchronous adapter methods."""

    def __init__(self, send: SendFn, label: str) -> None:
        self._send = send
        self._label = label
        self._tasks: Set[asyncio.Task] = set()

    def post(self, message: Dict[str, Any]) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, message: Dict[str, Any]) -> None:
        try:
            await self._send(message)
        except Exception as e:
            logger.debug(f"[{self._label}] Send '{message.get('type')}' failed: {e}")

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class WebSocketCaptureAdapter:
    """
    Capture run protocol:
        server → {type: "capture", action: "start" | "stop" | "abort", locale}
        client → capture_start / capture_result / capture_error / capture_end

    Only the run started last receives events. After `abort()` nothing more
    is delivered until the next `start()`.
    """

    def __init__(
        self,
        send: SendFn,
        locale: str = turn_cfg.locale,
        supported: bool = True,
        label: str = "",
    ) -> None:
        self._outbox = _Outbox(send, label)
        self._locale = locale
        self._supported = supported
        self._label = label
        self._listener: Optional[CaptureListener] = None

    @property
    def supported(self) -> bool:
        return self._supported

    @supported.setter
    def supported(self, value: bool) -> None:
        self._supported = bool(value)

    @property
    def capturing(self) -> bool:
        return self._listener is not None

    def start(self, listener: CaptureListener) -> None:
        self._listener = listener
        self._outbox.post({"type": "capture", "action": "start", "locale": self._locale})

    def stop(self) -> None:
        # Listener stays attached until the client reports capture_end
        self._outbox.post({"type": "capture", "action": "stop", "locale": self._locale})

    def abort(self) -> None:
        self._listener = None
        self._outbox.post({"type": "capture", "action": "abort", "locale": self._locale})

    def feed(self, event: CaptureEvent) -> None:
        """Deliver a client capture event to the current run."""
        listener = self._listener
        if listener is None:
            logger.debug(f"[{self._label}] No capture run, ignoring {type(event).__name__}")
            return
        if isinstance(event, CaptureEnded):
            self._listener = None
        listener(event)

    async def drain(self) -> None:
        await self._outbox.drain()


class WebSocketPlaybackAdapter:
    """
    Playback protocol:
        server → {type: "speak", text, rate, pitch, voice_id}
        client → playback_end | playback_error {message}
        server → {type: "cancel_speech"}   (when the turn is abandoned)
    """

    def __init__(self, send: SendFn, label: str = "") -> None:
        self._send = send
        self._outbox = _Outbox(send, label)
        self._label = label
        self._pending: Optional[asyncio.Future] = None

    @property
    def speaking(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def speak(self, text: str, voice: VoiceParams) -> None:
        loop = asyncio.get_running_loop()
        self._drop_pending()
        done = loop.create_future()
        self._pending = done
        await self._send({"type": "speak", "text": text, **voice.to_dict()})
        try:
            await done
        finally:
            if self._pending is done:
                self._pending = None

    def finish(self, error: Optional[str] = None) -> None:
        """Client reported the end of the current utterance."""
        pending = self._pending
        if pending is None or pending.done():
            logger.debug(f"[{self._label}] Playback report with nothing pending")
            return
        if error:
            pending.set_exception(PlaybackFailed(error))
        else:
            pending.set_result(None)

    def cancel(self) -> None:
        self._drop_pending()
        self._outbox.post({"type": "cancel_speech"})

    def _drop_pending(self) -> None:
        pending = self._pending
        self._pending = None
        if pending is not None and not pending.done():
            pending.cancel()

    async def drain(self) -> None:
        await self._outbox.drain()
