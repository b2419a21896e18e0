"""Clocks and timer scheduling for the recorder and the playback engine.

Both components run on one cooperative event loop. They read time through
a ``Clock`` and arm one-shot timers through a ``Scheduler`` so the loop (or
a manual stand-in) can be swapped without touching their state machines.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Protocol


class Clock(Protocol):
    """Source of the current time in milliseconds."""

    def now_ms(self) -> float: ...


class TimerHandle(Protocol):
    """A pending one-shot timer."""

    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Arms one-shot timers."""

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle: ...


class MonotonicClock:
    """Monotonic milliseconds, for measuring elapsed playback time."""

    def now_ms(self) -> float:
        return time.monotonic() * 1000.0


class WallClock:
    """Epoch milliseconds, for stamping recorded events."""

    def now_ms(self) -> float:
        return float(time.time_ns() // 1_000_000)


class LoopScheduler:
    """Schedules callbacks on an asyncio event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self.loop.call_later(max(delay_ms, 0.0) / 1000.0, callback)


__all__ = [
    "Clock",
    "TimerHandle",
    "Scheduler",
    "MonotonicClock",
    "WallClock",
    "LoopScheduler",
]
