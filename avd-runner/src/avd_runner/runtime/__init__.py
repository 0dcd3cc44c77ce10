"""Orchestration runtime: scheduler, watchdogs, retry budgets and the driver."""

from __future__ import annotations

from avd_runner.runtime.context import ExecutionContext
from avd_runner.runtime.device import DeviceRunner, DeviceRunnerError, ResultParser, ResultSink
from avd_runner.runtime.orchestrator import AttemptRecord, Orchestrator
from avd_runner.runtime.retry_policy import RetryPolicy
from avd_runner.runtime.scheduler import CancellationToken, Scheduler, install_interrupt_handler
from avd_runner.runtime.stats import RunStats
from avd_runner.runtime.wait_timer import TimerState, WaitTimer

__all__ = [
    "AttemptRecord",
    "CancellationToken",
    "DeviceRunner",
    "DeviceRunnerError",
    "ExecutionContext",
    "Orchestrator",
    "ResultParser",
    "ResultSink",
    "RetryPolicy",
    "RunStats",
    "Scheduler",
    "TimerState",
    "WaitTimer",
    "install_interrupt_handler",
]
