"""Contracts the orchestrator needs from its collaborators."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from avd_runner.exit_status import ExitStatus

Completion = Callable[..., None]


class DeviceRunnerError(RuntimeError):
    pass


@runtime_checkable
class ResultSink(Protocol):
    def feed_line(self, line: str) -> None: ...


@runtime_checkable
class ResultParser(ResultSink, Protocol):
    def reset(self) -> None: ...

    def mark_complete(self) -> None: ...

    def force_final_computation(self) -> None: ...

    def render_report(self, fmt: str) -> str: ...


@runtime_checkable
class DeviceRunner(Protocol):
    """One virtual device and the test run on it.

    ``create_device``, ``launch_app_and_run_tests`` and ``delete_device``
    return immediately and later call ``completion(result)`` or
    ``completion(error=exc)``, possibly from another thread.
    """

    @property
    def device_id(self) -> Optional[str]: ...

    def create_device(self, name: str, completion: Completion) -> None: ...

    def install_app(self) -> None: ...

    def launch_app_and_run_tests(self, sink: ResultSink, completion: Completion) -> None: ...

    def is_run_complete(self) -> bool: ...

    def is_device_alive(self) -> bool: ...

    def delete_device(self, completion: Completion) -> None: ...

    def current_test_exit_status(self) -> ExitStatus: ...


RunnerFactory = Callable[[Any], DeviceRunner]
ParserFactory = Callable[[Path, Any], ResultParser]
