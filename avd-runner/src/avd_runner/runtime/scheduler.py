"""Single-threaded cooperative scheduler.

All orchestration steps run as callbacks on the thread that calls
:meth:`Scheduler.run`, one at a time. Work that happens elsewhere (emulator
boot, ``am instrument`` readers, adb calls on worker threads) reports back
through :meth:`Scheduler.call_soon_threadsafe` and is then dispatched on the
loop thread like everything else.

Each pass of the loop ("tick"):
  1. runs the ``on_tick`` hook (used to observe an interrupt request),
  2. moves calls posted from other threads into the ready queue,
  3. moves due timers into the ready queue,
  4. runs the calls that were ready when the pass started,
  5. idles ``tick_s`` when there was nothing to run.

Calls scheduled while a callback is running only run on a later pass.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import signal
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, List, Optional, Tuple

from avd_runner.logging_utils import StepLogContext, step_log_context

logger = logging.getLogger(__name__)

DEFAULT_TICK_S = 0.01


def _noop(*_args: Any) -> None:
    return None


class CancellationToken:
    """Process-wide "please stop" flag.

    Safe to set from a signal handler or any thread; only the scheduler's tick
    hook reads it.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def install_interrupt_handler(
    token: CancellationToken, *, signum: int = signal.SIGINT
) -> Any:
    """Route ``signum`` to ``token.cancel()``; returns the previous handler."""

    def _on_signal(_signum: int, _frame: Any) -> None:
        token.cancel()

    return signal.signal(signum, _on_signal)


@dataclass(eq=False)
class ScheduledCall:
    fn: Callable[..., Any]
    args: Tuple[Any, ...]
    label: str
    attempt: Optional[int]
    scheduled_at: float
    when: Optional[float] = None
    cancelled: bool = field(default=False)

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        # Drop references so a cancelled call cannot keep a stale step alive.
        self.fn = _noop
        self.args = ()


class Scheduler:
    def __init__(
        self,
        *,
        tick_s: float = DEFAULT_TICK_S,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._tick_s = float(tick_s)
        self._clock = clock
        self._sleep = sleep
        self._ready: Deque[ScheduledCall] = deque()
        self._timers: List[Tuple[float, int, ScheduledCall]] = []
        self._inbox: Deque[ScheduledCall] = deque()
        self._inbox_lock = threading.Lock()
        self._seq = itertools.count()
        self._current: Optional[ScheduledCall] = None

    @property
    def tick_s(self) -> float:
        return self._tick_s

    def now(self) -> float:
        return self._clock()

    def current_step(self) -> Optional[ScheduledCall]:
        return self._current

    def _make_call(
        self,
        fn: Callable[..., Any],
        args: Tuple[Any, ...],
        label: Optional[str],
        attempt: Optional[int],
    ) -> ScheduledCall:
        return ScheduledCall(
            fn=fn,
            args=args,
            label=label or getattr(fn, "__name__", "call"),
            attempt=attempt,
            scheduled_at=self._clock(),
        )

    def call_soon(
        self,
        fn: Callable[..., Any],
        *args: Any,
        label: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> ScheduledCall:
        call = self._make_call(fn, args, label, attempt)
        self._ready.append(call)
        return call

    def call_later(
        self,
        delay_s: float,
        fn: Callable[..., Any],
        *args: Any,
        label: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> ScheduledCall:
        call = self._make_call(fn, args, label, attempt)
        call.when = call.scheduled_at + max(0.0, float(delay_s))
        heapq.heappush(self._timers, (call.when, next(self._seq), call))
        return call

    def call_soon_threadsafe(
        self,
        fn: Callable[..., Any],
        *args: Any,
        label: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> ScheduledCall:
        call = self._make_call(fn, args, label, attempt)
        with self._inbox_lock:
            self._inbox.append(call)
        return call

    def cancel_pending(self) -> int:
        """Cancel every queued call and timer. Returns how many were dropped."""

        with self._inbox_lock:
            inbox = list(self._inbox)
            self._inbox.clear()
        dropped = 0
        for call in itertools.chain(self._ready, (t[2] for t in self._timers), inbox):
            if not call.cancelled:
                call.cancel()
                dropped += 1
        self._ready.clear()
        self._timers.clear()
        if dropped:
            logger.debug("dropped %d pending call(s)", dropped)
        return dropped

    def has_pending(self) -> bool:
        with self._inbox_lock:
            if self._inbox:
                return True
        return any(not c.cancelled for c in self._ready) or any(
            not t[2].cancelled for t in self._timers
        )

    def _drain_inbox(self) -> None:
        with self._inbox_lock:
            while self._inbox:
                self._ready.append(self._inbox.popleft())

    def _collect_due_timers(self) -> None:
        now = self._clock()
        while self._timers and self._timers[0][0] <= now:
            _, _, call = heapq.heappop(self._timers)
            if not call.cancelled:
                self._ready.append(call)

    def _invoke(self, call: ScheduledCall) -> None:
        ctx = StepLogContext(step=call.label, attempt=call.attempt, scheduled_at=call.scheduled_at)
        self._current = call
        try:
            with step_log_context(ctx):
                call.fn(*call.args)
        finally:
            self._current = None

    def run_once(self) -> bool:
        """Run a single pass. Returns True when at least one call ran."""

        self._drain_inbox()
        self._collect_due_timers()
        ran = 0
        for _ in range(len(self._ready)):
            if not self._ready:
                break
            call = self._ready.popleft()
            if call.cancelled:
                continue
            self._invoke(call)
            ran += 1
        return ran > 0

    def run(
        self,
        *,
        stop: Callable[[], bool],
        on_tick: Optional[Callable[[], None]] = None,
    ) -> None:
        while not stop():
            if on_tick is not None:
                on_tick()
                if stop():
                    break
            if not self.run_once():
                self._sleep(self._tick_s)
