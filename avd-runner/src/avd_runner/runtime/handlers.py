"""Step outcome handlers.

A handler wraps exactly one asynchronous collaborator call (create a device,
launch the tests, delete a device) and races its completion against a
:class:`WaitTimer`. Whichever comes first wins; the loser is ignored.

Usage::

    timer = WaitTimer(scheduler, 60.0)
    handler = CreateDeviceHandler(scheduler, timer, name="create_device")
    handler.begin_with = lambda: stats.end_timer(step)
    handler.on_success = ...
    handler.on_error = ...
    handler.on_timeout = ...
    handler.start()
    runner.create_device(name, handler.completion)

``begin_with`` always runs right before the winning terminal callback.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from avd_runner.runtime.scheduler import Scheduler
from avd_runner.runtime.wait_timer import WaitTimer

logger = logging.getLogger(__name__)

Completion = Callable[..., None]


class StepOutcomeHandler:
    def __init__(
        self,
        scheduler: Scheduler,
        timer: WaitTimer,
        *,
        name: str = "step",
        attempt: Optional[int] = None,
    ) -> None:
        self._scheduler = scheduler
        self._timer = timer
        self._name = name
        self._attempt = attempt
        self._lock = threading.Lock()
        self._outcome: Optional[str] = None

        self.begin_with: Optional[Callable[[], None]] = None
        self.on_success: Optional[Callable[[], None]] = None
        self.on_error: Optional[Callable[[BaseException], None]] = None
        self.on_timeout: Optional[Callable[[], None]] = None

        self.result: Any = None
        self.error: Optional[BaseException] = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def outcome(self) -> Optional[str]:
        """``success``, ``error``, ``timeout``, ``abandoned`` or None while pending."""
        return self._outcome

    @property
    def resolved(self) -> bool:
        return self._outcome is not None

    def start(self) -> None:
        self._timer.start(self._on_timer_fired, attempt=self._attempt)

    def completion(self, result: Any = None, error: Optional[BaseException] = None) -> None:
        """Entry point handed to the collaborator. Safe to call from any thread."""

        if self.resolved:
            logger.debug("%s: late completion ignored (%s)", self._name, self._outcome)
            return
        self._scheduler.call_soon_threadsafe(
            self._deliver, result, error, label=f"{self._name}:completion", attempt=self._attempt
        )

    def abandon(self) -> bool:
        """Resolve without running any callback."""

        if not self._try_resolve("abandoned"):
            return False
        self._timer.cancel()
        self._release()
        return True

    def _try_resolve(self, outcome: str) -> bool:
        with self._lock:
            if self._outcome is not None:
                return False
            self._outcome = outcome
            return True

    def _release(self) -> None:
        self.begin_with = None
        self.on_success = None
        self.on_error = None
        self.on_timeout = None

    def _record_result(self, result: Any) -> None:
        self.result = result

    def _deliver(self, result: Any, error: Optional[BaseException]) -> None:
        if not self._try_resolve("error" if error is not None else "success"):
            logger.debug("%s: completion after %s ignored", self._name, self._outcome)
            return
        self._timer.cancel()
        self.error = error
        if error is None:
            self._record_result(result)

        begin_with, on_success, on_error = self.begin_with, self.on_success, self.on_error
        self._release()
        if begin_with is not None:
            begin_with()
        if error is not None:
            if on_error is not None:
                on_error(error)
        elif on_success is not None:
            on_success()

    def _on_timer_fired(self) -> None:
        if not self._try_resolve("timeout"):
            return
        begin_with, on_timeout = self.begin_with, self.on_timeout
        self._release()
        if begin_with is not None:
            begin_with()
        if on_timeout is not None:
            on_timeout()


class CreateDeviceHandler(StepOutcomeHandler):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.device_id: Optional[str] = None

    def _record_result(self, result: Any) -> None:
        super()._record_result(result)
        self.device_id = str(result) if result is not None else None


class LaunchHandler(StepOutcomeHandler):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.pid: int = -1

    def _record_result(self, result: Any) -> None:
        super()._record_result(result)
        try:
            self.pid = int(result)
        except (TypeError, ValueError):
            self.pid = -1


class DeleteDeviceHandler(StepOutcomeHandler):
    pass
