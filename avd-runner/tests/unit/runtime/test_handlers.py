from __future__ import annotations

from avd_fakes import FakeClock

from avd_runner.runtime.handlers import (
    CreateDeviceHandler,
    LaunchHandler,
    StepOutcomeHandler,
)
from avd_runner.runtime.scheduler import Scheduler
from avd_runner.runtime.wait_timer import WaitTimer


def _wired(handler_cls=StepOutcomeHandler, interval_s: float = 1.0):
    clock = FakeClock()
    sched = Scheduler(tick_s=0.01, clock=clock.now, sleep=clock.sleep)
    handler = handler_cls(sched, WaitTimer(sched, interval_s), name="step", attempt=1)
    calls: list[str] = []
    handler.begin_with = lambda: calls.append("begin")
    handler.on_success = lambda: calls.append("success")
    handler.on_error = lambda err: calls.append(f"error:{err}")
    handler.on_timeout = lambda: calls.append("timeout")
    handler.start()
    return clock, sched, handler, calls


def test_completion_before_timeout_wins() -> None:
    clock, sched, handler, calls = _wired()
    handler.completion("ok")
    sched.run_once()

    clock.advance(5.0)
    sched.run_once()

    assert calls == ["begin", "success"]
    assert handler.outcome == "success"
    assert handler.result == "ok"


def test_timeout_before_completion_wins() -> None:
    clock, sched, handler, calls = _wired()
    clock.advance(1.0)
    sched.run_once()

    handler.completion("late")
    sched.run_once()

    assert calls == ["begin", "timeout"]
    assert handler.outcome == "timeout"
    assert handler.result is None


def test_completion_and_timeout_ready_in_the_same_pass() -> None:
    clock, sched, handler, calls = _wired()
    clock.advance(1.0)
    handler.completion("racing")
    sched.run_once()
    sched.run_once()

    assert calls.count("begin") == 1
    assert len(calls) == 2


def test_error_completion_runs_on_error() -> None:
    _, sched, handler, calls = _wired()
    handler.completion(error=RuntimeError("boom"))
    sched.run_once()

    assert calls == ["begin", "error:boom"]
    assert str(handler.error) == "boom"


def test_double_completion_runs_callbacks_once() -> None:
    _, sched, handler, calls = _wired()
    handler.completion("a")
    handler.completion("b")
    sched.run_once()
    sched.run_once()

    assert calls == ["begin", "success"]
    assert handler.result == "a"


def test_abandon_suppresses_all_callbacks() -> None:
    clock, sched, handler, calls = _wired()
    assert handler.abandon() is True
    assert handler.abandon() is False

    handler.completion("late")
    clock.advance(5.0)
    sched.run_once()

    assert calls == []
    assert handler.outcome == "abandoned"
    assert handler.on_success is None


def test_typed_handlers_record_results() -> None:
    _, sched, create, _ = _wired(CreateDeviceHandler)
    create.completion("emulator-5554")
    sched.run_once()
    assert create.device_id == "emulator-5554"

    _, sched, launch, _ = _wired(LaunchHandler)
    launch.completion("not-a-pid")
    sched.run_once()
    assert launch.pid == -1

    _, sched, launch, _ = _wired(LaunchHandler)
    launch.completion(1234)
    sched.run_once()
    assert launch.pid == 1234
