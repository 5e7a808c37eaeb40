"""
SpeakTutor — Timing Primitives

Two building blocks for the turn controller, both bound to the running
asyncio loop:

  • CancellableTimer — a one-shot deadline that can be cancelled or re-armed.
  • DeadlineRace     — runs a coroutine against a hard deadline; whichever
                       settles first wins and the loser is disposed.

Callbacks are plain callables bound by the caller (typically to an event
that already carries its turn id), so a timer never holds a reference to
mutable turn state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger("speaktutor.timers")


class CancellableTimer:
    """
    One-shot timer.

    Usage:
        timer = CancellableTimer(2.0, on_fire, name="silence")
        timer.start()
        timer.restart()   # push the deadline out again
        timer.cancel()    # never fires
    """

    def __init__(self, delay_s: float, callback: Callable[[], Any], name: str = "") -> None:
        self._delay_s = delay_s
        self._callback = callback
        self._name = name
        self._handle: Optional[asyncio.TimerHandle] = None
        self._fired = False

    @property
    def active(self) -> bool:
        return self._handle is not None

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def delay_s(self) -> float:
        return self._delay_s

    def start(self) -> None:
        if self._handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._fired = False
        self._handle = loop.call_later(self._delay_s, self._fire)

    def restart(self) -> None:
        self.cancel()
        self.start()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._fired = True
        try:
            self._callback()
        except Exception as e:
            logger.error(f"Timer '{self._name}' callback error: {e}", exc_info=True)


class DeadlineRace:
    """
    Races an awaitable against a deadline.

    Exactly one of `on_settled(task)` or `on_timeout()` is called, unless the
    race is cancelled first. When the deadline wins the task is cancelled.
    `detach()` drops the deadline but lets the task run to completion;
    `on_settled` still fires, and it is up to the caller to discard the result.
    """

    def __init__(
        self,
        awaitable: Awaitable[Any],
        timeout_s: float,
        on_settled: Callable[[asyncio.Future], None],
        on_timeout: Callable[[], None],
        name: str = "",
    ) -> None:
        self._awaitable = awaitable
        self._on_settled = on_settled
        self._on_timeout = on_timeout
        self._name = name
        self._task: Optional[asyncio.Future] = None
        self._deadline = CancellableTimer(timeout_s, self._deadline_reached, name=f"{name}-deadline")
        self._outcome: Optional[str] = None   # "settled" | "timeout" | "cancelled"

    @property
    def outcome(self) -> Optional[str]:
        return self._outcome

    @property
    def task(self) -> Optional[asyncio.Future]:
        return self._task

    def start(self) -> "DeadlineRace":
        self._task = asyncio.ensure_future(self._awaitable)
        self._task.add_done_callback(self._task_done)
        self._deadline.start()
        return self

    def detach(self) -> None:
        """Stop racing; the task keeps running and will still report."""
        self._deadline.cancel()

    def cancel(self) -> None:
        """Dispose both sides; neither callback fires."""
        if self._outcome is None:
            self._outcome = "cancelled"
        self._deadline.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def _task_done(self, task: asyncio.Future) -> None:
        if self._outcome is not None:
            if not task.cancelled():
                task.exception()  # retrieved, so the loop does not warn
            return
        self._outcome = "settled"
        self._deadline.cancel()
        self._on_settled(task)

    def _deadline_reached(self) -> None:
        if self._outcome is not None:
            return
        self._outcome = "timeout"
        logger.warning(f"Deadline '{self._name}' reached after {self._deadline.delay_s:.1f}s")
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._on_timeout()
