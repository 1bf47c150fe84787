"""Countdown to the quiz deadline.

:class:`DeadlineTracker` holds the edge-triggered rules and is driven by an
explicit ``now``; :class:`CountdownTimer` runs it on a background thread and
posts :class:`TimerEvent` objects onto a queue for the control thread.
"""

from __future__ import annotations

import logging
import math
import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

__all__ = [
    "Clock",
    "TimerEventKind",
    "TimerEvent",
    "DeadlineTracker",
    "CountdownTimer",
    "WARNING_WINDOW_SECONDS",
    "utc_now",
    "format_duration",
    "format_wait",
]

WARNING_WINDOW_SECONDS = 120

Clock = Callable[[], datetime]

logger = logging.getLogger("termquiz.timer")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimerEventKind(Enum):
    TICK = "tick"
    WARNING = "warning"
    EXPIRE = "expire"


@dataclass(frozen=True)
class TimerEvent:
    kind: TimerEventKind
    remaining: float

    @property
    def seconds(self) -> int:
        """Whole seconds left, rounded up so ``0`` only shows at the deadline."""

        return max(0, math.ceil(self.remaining))


class DeadlineTracker:
    """Turn wall-clock observations into TICK / WARNING / EXPIRE events.

    WARNING fires once, on the first observation inside the warning window.
    EXPIRE fires once, on the first observation at or past the deadline, and
    suppresses any WARNING that has not fired yet.
    """

    def __init__(
        self, end: datetime, *, warning_window: float = WARNING_WINDOW_SECONDS
    ) -> None:
        self._end = end
        self._warning_window = warning_window
        self._warned = False
        self._expired = False

    @property
    def expired(self) -> bool:
        return self._expired

    @property
    def warned(self) -> bool:
        return self._warned

    def remaining(self, now: datetime) -> float:
        return (self._end - now).total_seconds()

    def observe(self, now: datetime) -> list[TimerEvent]:
        remaining = self.remaining(now)
        events = [TimerEvent(TimerEventKind.TICK, remaining)]
        if remaining <= 0:
            if not self._expired:
                self._expired = True
                events.append(TimerEvent(TimerEventKind.EXPIRE, remaining))
        elif remaining <= self._warning_window and not self._warned:
            if not self._expired:
                self._warned = True
                events.append(TimerEvent(TimerEventKind.WARNING, remaining))
        return events


class CountdownTimer:
    """Background thread observing the deadline once per ``interval``."""

    def __init__(
        self,
        end: datetime,
        events: "queue.Queue[TimerEvent]",
        *,
        clock: Clock = utc_now,
        interval: float = 1.0,
        warning_window: float = WARNING_WINDOW_SECONDS,
    ) -> None:
        self._tracker = DeadlineTracker(end, warning_window=warning_window)
        self._events = events
        self._clock = clock
        self._interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="termquiz-timer", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = 2.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def tick(self) -> list[TimerEvent]:
        """Observe the clock once and enqueue the resulting events."""

        events = self._tracker.observe(self._clock())
        for event in events:
            self._events.put(event)
        return events

    def _run(self) -> None:
        while not self._stop.is_set():
            self.tick()
            if self._tracker.expired:
                logger.info("Deadline reached")
                return
            self._stop.wait(self._interval)


def format_duration(total_seconds: float) -> str:
    """Render a countdown such as ``1h 02m 03s``, ``4m 05s`` or ``9s``."""

    seconds = max(0, math.ceil(total_seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


def format_wait(total_seconds: float) -> str:
    if total_seconds <= 0:
        return "now"
    return format_duration(total_seconds)
