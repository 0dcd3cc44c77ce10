from __future__ import annotations

import enum
from typing import Callable, Optional

from avd_runner.runtime.scheduler import ScheduledCall, Scheduler


class TimerState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    FIRED = "fired"
    CANCELLED = "cancelled"


class WaitTimer:
    """One-shot watchdog deadline armed on the scheduler.

    The callback runs at most once, and never after :meth:`cancel`. The timer
    forgets its callback as soon as it fires or is cancelled.
    """

    def __init__(self, scheduler: Scheduler, interval_s: float, *, label: str = "watchdog") -> None:
        if interval_s < 0:
            raise ValueError("interval_s must be >= 0")
        self._scheduler = scheduler
        self._interval_s = float(interval_s)
        self._label = label
        self._state = TimerState.IDLE
        self._callback: Optional[Callable[[], None]] = None
        self._call: Optional[ScheduledCall] = None

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def state(self) -> TimerState:
        return self._state

    @property
    def expired(self) -> bool:
        return self._state is TimerState.FIRED

    def start(self, callback: Callable[[], None], *, attempt: Optional[int] = None) -> None:
        if self._state is not TimerState.IDLE:
            raise RuntimeError(f"WaitTimer already {self._state.value}")
        self._callback = callback
        self._state = TimerState.RUNNING
        self._call = self._scheduler.call_later(
            self._interval_s, self._fire, label=self._label, attempt=attempt
        )

    def cancel(self) -> None:
        if self._state is not TimerState.RUNNING:
            if self._state is TimerState.IDLE:
                self._state = TimerState.CANCELLED
            return
        self._state = TimerState.CANCELLED
        self._callback = None
        if self._call is not None:
            self._call.cancel()
            self._call = None

    def _fire(self) -> None:
        if self._state is not TimerState.RUNNING:
            return
        self._state = TimerState.FIRED
        callback, self._callback = self._callback, None
        self._call = None
        if callback is not None:
            callback()
