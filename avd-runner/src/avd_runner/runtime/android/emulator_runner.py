from __future__ import annotations

import logging
import subprocess
import threading
import time
from typing import Any, Callable, Optional

from avd_runner.config import ConfigError, RunConfig
from avd_runner.exit_status import CONTINUE_STATUSES, ExitStatus
from avd_runner.runtime.android.controller import (
    AndroidController,
    AndroidControllerError,
    AvdManager,
    emulator_cmd,
    pick_free_console_port,
    start_emulator,
)
from avd_runner.runtime.device import Completion, DeviceRunnerError, ResultSink

logger = logging.getLogger(__name__)

_INSTRUMENTATION_PREFIX = "INSTRUMENTATION_"


def _spawn(target: Callable[[], None], *, name: str) -> threading.Thread:
    thread = threading.Thread(target=target, name=name, daemon=True)
    thread.start()
    return thread


class EmulatorRunner:
    """Device runner backed by a freshly created AVD.

    Slow operations (create/boot, the instrumentation run, delete) happen on
    worker threads and report back through the completion callable they were
    given. Nothing here touches orchestrator state.
    """

    def __init__(
        self,
        config: RunConfig,
        *,
        adb_timeout_s: float = 30.0,
        install_timeout_s: float = 240.0,
        avd_manager: Optional[AvdManager] = None,
        spawn: Callable[..., Any] = _spawn,
        watchdog_poll_s: float = 0.5,
        create_grace_s: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._adb_timeout_s = float(adb_timeout_s)
        self._install_timeout_s = float(install_timeout_s)
        self._avd = avd_manager or AvdManager(avdmanager_path=config.avdmanager_path)
        self._spawn = spawn
        self._watchdog_poll_s = float(watchdog_poll_s)
        self._create_grace_s = float(create_grace_s)
        self._clock = clock

        self._avd_name: Optional[str] = None
        self._serial: Optional[str] = None
        self._controller: Optional[AndroidController] = None
        self._emulator: Optional["subprocess.Popen[str]"] = None
        self._instrumentation: Optional["subprocess.Popen[str]"] = None
        self._sink: Optional[ResultSink] = None
        self._run_done = threading.Event()
        self._stopping = threading.Event()

    @property
    def device_id(self) -> Optional[str]:
        return self._serial

    @property
    def avd_name(self) -> Optional[str]:
        return self._avd_name

    # ------------------------------------------------------------------ create

    def create_device(self, name: str, completion: Completion) -> None:
        # Finish ahead of the caller's watchdog so a late device is never
        # reported to a step that has already timed out.
        deadline = self._clock() + float(self._config.create_timeout_s) - self._create_grace_s
        self._spawn(
            lambda: self._create_device(name, deadline, completion), name=f"create-{name}"
        )

    def _time_left(self, deadline: float, what: str) -> float:
        left = deadline - self._clock()
        if left <= 0:
            raise DeviceRunnerError(f"create deadline passed before {what}")
        return left

    def _create_device(self, name: str, deadline: float, completion: Completion) -> None:
        cfg = self._config
        try:
            if not cfg.system_image:
                raise DeviceRunnerError("system_image is required to create a device")
            self._avd.create_avd(
                name,
                system_image=cfg.system_image,
                device_profile=cfg.device_profile,
                timeout_s=self._time_left(deadline, "avdmanager create"),
            )
            self._avd_name = name

            host = AndroidController(adb_path=cfg.adb_path, timeout_s=self._adb_timeout_s)
            port = pick_free_console_port(list(host.list_emulator_serials()))
            self._serial = f"emulator-{port}"
            self._controller = AndroidController(
                adb_path=cfg.adb_path, serial=self._serial, timeout_s=self._adb_timeout_s
            )
            self._time_left(deadline, "emulator start")
            self._emulator = start_emulator(
                emulator_cmd(
                    cfg.emulator_path,
                    name,
                    port=port,
                    headless=cfg.headless,
                    extra_args=cfg.emulator_args,
                )
            )
            emulator = self._emulator
            self._controller.wait_for_boot(
                timeout_s=min(float(cfg.boot_timeout_s), self._time_left(deadline, "boot wait")),
                is_cancelled=lambda: self._stopping.is_set() or emulator.poll() is not None,
            )
            # A single adb call can overrun the boot wait.
            self._time_left(deadline, "boot completed")
        except Exception as exc:
            logger.debug("create %s failed: %r", name, exc)
            # The orchestrator never tears down a device it was not told about.
            self._release_best_effort()
            completion(error=exc)
            return
        completion(self._serial)

    # ----------------------------------------------------------------- install

    def install_app(self) -> None:
        if self._controller is None:
            raise DeviceRunnerError("no device to install on")
        for apk in (self._config.app_path, self._config.test_apk_path):
            if not apk:
                continue
            try:
                self._controller.install(apk, timeout_s=self._install_timeout_s)
            except AndroidControllerError as e:
                raise DeviceRunnerError(str(e)) from e

    # ------------------------------------------------------------------ launch

    def launch_app_and_run_tests(self, sink: ResultSink, completion: Completion) -> None:
        if self._controller is None:
            completion(error=DeviceRunnerError("no device to run tests on"))
            return
        cfg = self._config
        self._sink = sink
        self._run_done.clear()
        try:
            proc = self._controller.start_instrumentation(
                cfg.instrumentation_target,
                include=cfg.tests_to_run,
                exclude=cfg.tests_to_skip,
            )
        except (AndroidControllerError, ConfigError) as e:
            completion(error=e)
            return
        self._instrumentation = proc
        self._spawn(lambda: self._read_instrumentation(proc, sink, completion), name="instrument")
        if cfg.test_timeout_s:
            self._spawn(
                lambda: self._watch_test_timeout(proc, sink, float(cfg.test_timeout_s)),
                name="test-timeout",
            )

    def _read_instrumentation(
        self,
        proc: "subprocess.Popen[str]",
        sink: ResultSink,
        completion: Completion,
    ) -> None:
        launched = False
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                sink.feed_line(line)
                if not launched and line.startswith(_INSTRUMENTATION_PREFIX):
                    launched = True
                    completion(proc.pid)
            rc = proc.wait()
            if not launched:
                completion(
                    error=DeviceRunnerError(
                        f"instrumentation exited (rc={rc}) before reporting any status"
                    )
                )
            self._record_resume_point(sink)
        except Exception as exc:
            logger.error("instrumentation reader failed: %r", exc)
            if not launched:
                completion(error=exc)
        finally:
            self._run_done.set()

    def _watch_test_timeout(
        self, proc: "subprocess.Popen[str]", sink: ResultSink, timeout_s: float
    ) -> None:
        elapsed_fn = getattr(sink, "current_test_elapsed", None)
        mark_timeout = getattr(sink, "mark_timeout", None)
        if not callable(elapsed_fn) or not callable(mark_timeout):
            return
        while proc.poll() is None and not self._stopping.is_set():
            elapsed = elapsed_fn()
            if elapsed is not None and elapsed > timeout_s:
                result = mark_timeout(f"test exceeded {timeout_s}s")
                logger.error(
                    "Test %s timed out after %.1fs",
                    getattr(result, "test_id", "<unknown>"),
                    elapsed,
                )
                proc.kill()
                return
            time.sleep(self._watchdog_poll_s)

    def _record_resume_point(self, sink: ResultSink) -> None:
        """After a timeout/crash, skip what already ran on the next in-place attempt."""

        if self.current_test_exit_status() not in CONTINUE_STATUSES:
            return
        executed = getattr(sink, "executed_test_ids", None)
        if not callable(executed):
            return
        skip = self._config.tests_to_skip
        for test_id in executed():
            if test_id not in skip:
                skip.append(test_id)

    def is_run_complete(self) -> bool:
        return self._run_done.is_set()

    def is_device_alive(self) -> bool:
        return self._emulator is not None and self._emulator.poll() is None

    def current_test_exit_status(self) -> ExitStatus:
        exit_status = getattr(self._sink, "exit_status", None)
        if not callable(exit_status):
            return ExitStatus.ALL_PASSED
        return ExitStatus(exit_status())

    # ------------------------------------------------------------------ delete

    def delete_device(self, completion: Completion) -> None:
        self._spawn(lambda: self._delete_device(completion), name=f"delete-{self._avd_name}")

    def _delete_device(self, completion: Completion) -> None:
        errors = self._release_best_effort()
        if errors:
            completion(error=DeviceRunnerError("; ".join(errors)))
        else:
            completion(self._avd_name)

    def _release_best_effort(self) -> list[str]:
        self._stopping.set()
        errors: list[str] = []

        proc = self._instrumentation
        if proc is not None and proc.poll() is None:
            proc.kill()

        if self._controller is not None and self.is_device_alive():
            try:
                self._controller.emu_kill()
            except AndroidControllerError as e:
                errors.append(str(e))

        emulator = self._emulator
        if emulator is not None and emulator.poll() is None:
            try:
                emulator.wait(timeout=20)
            except subprocess.TimeoutExpired:
                logger.warning("emulator %s ignored emu kill; terminating", self._serial)
                emulator.kill()
                emulator.wait()

        if self._avd_name:
            try:
                self._avd.delete_avd(self._avd_name)
            except AndroidControllerError as e:
                errors.append(str(e))
        return errors
