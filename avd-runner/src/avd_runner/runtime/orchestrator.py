"""Execution orchestrator.

Drives one test run through as many attempts as the retry budgets allow::

    setup_execution -> create_device -> install_app -> launch_app -> monitor
        -> runner_completed -> teardown_device -> finish

Any step may jump to ``teardown_device`` with a failure status (or, when no
device exists, ``teardown_device`` goes straight to ``finish``). ``finish``
decides between stopping, a *restart* (new context, new device, fresh config
copy) and a *continue* (same context and device, next attempt number).

Every step runs as a scheduler callback; nothing here blocks.

Scenarios:
  1. device crash, restart passes          -> AllPassed
  2. timeout, continue passes              -> restart if tolerance allows, else TestTimeout
  3. tests fail, restart passes            -> AllPassed
  4. clean pass                            -> AllPassed
  5. tests fail, no restarts left          -> TestsFailed
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional

from avd_runner.config import RunConfig
from avd_runner.exit_status import (
    CONTINUE_STATUSES,
    TOOLING_FAILURES,
    ExitStatus,
    describe_exit_status,
)
from avd_runner.reporting.instrumentation_parser import InstrumentationResultParser
from avd_runner.reporting.writer import ReportWriter
from avd_runner.runtime.context import ExecutionContext
from avd_runner.runtime.device import ParserFactory, RunnerFactory
from avd_runner.runtime.handlers import (
    CreateDeviceHandler,
    DeleteDeviceHandler,
    LaunchHandler,
    StepOutcomeHandler,
)
from avd_runner.runtime.process import is_process_alive
from avd_runner.runtime.retry_policy import RetryPolicy
from avd_runner.runtime.scheduler import CancellationToken, Scheduler
from avd_runner.runtime.stats import RunStats
from avd_runner.runtime.wait_timer import WaitTimer

logger = logging.getLogger(__name__)


def _label(step: str, attempt: int) -> str:
    return f"[Attempt {attempt}] {step}"


def default_parser_factory(log_path: Path, config: RunConfig) -> InstrumentationResultParser:
    return InstrumentationResultParser(
        ReportWriter.to_file(log_path), suite_name=config.bundle_name
    )


def _close_quietly(obj: Any) -> None:
    close = getattr(obj, "close", None)
    if not callable(close):
        return
    try:
        close()
    except Exception as exc:
        logger.debug("close failed for %r: %r", obj, exc)


@dataclass(frozen=True)
class AttemptRecord:
    attempt_number: int
    exit_status: ExitStatus


class Orchestrator:
    def __init__(
        self,
        config: RunConfig,
        *,
        runner_factory: RunnerFactory,
        parser_factory: ParserFactory = default_parser_factory,
        stats: Optional[RunStats] = None,
        scheduler: Optional[Scheduler] = None,
        cancel_token: Optional[CancellationToken] = None,
        process_alive: Callable[[int], bool] = is_process_alive,
    ) -> None:
        self._config = config
        # Attempts record executed tests in their config; the caller's copy
        # stays untouched and every restart starts from it again.
        self._execution_config = config.copy()
        self._policy = RetryPolicy(
            failure_tolerance=int(config.failure_tolerance),
            max_retries=int(config.error_retries_count),
        )
        self._scheduler = scheduler or Scheduler(tick_s=config.tick_interval_s)
        self._stats = stats or RunStats()
        self._cancel = cancel_token or CancellationToken()
        self._runner_factory = runner_factory
        self._parser_factory = parser_factory
        self._process_alive = process_alive

        self._context: Optional[ExecutionContext] = None
        self._inflight: Optional[StepOutcomeHandler] = None
        self._final_exit_status = ExitStatus.ALL_PASSED
        self._exit_loop = False
        self._interrupt_handled = False
        self._attempts: List[AttemptRecord] = []

    # ---------------------------------------------------------------- public

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def stats(self) -> RunStats:
        return self._stats

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def context(self) -> Optional[ExecutionContext]:
        return self._context

    @property
    def final_exit_status(self) -> ExitStatus:
        return self._final_exit_status

    @property
    def attempts(self) -> List[AttemptRecord]:
        return list(self._attempts)

    def run(self) -> ExitStatus:
        """Kick off the first attempt and loop until done or interrupted."""

        self._begin()
        try:
            self._scheduler.run(stop=lambda: self._exit_loop, on_tick=self._check_interrupt)
        finally:
            if self._context is not None:
                _close_quietly(self._context.parser)

        logger.info("Number of Executions: %d", self._policy.retries + 1)
        logger.info("Final Exit Status: %s", describe_exit_status(self._final_exit_status))
        return self._final_exit_status

    def describe_current_step(self) -> str:
        call = self._scheduler.current_step()
        if call is None:
            return "Idle"
        attempt = f" (attempt {call.attempt})" if call.attempt is not None else ""
        return f"Currently executing {call.label}{attempt}"

    # --------------------------------------------------------------- helpers

    def _next(self, fn: Callable[..., None], ctx: ExecutionContext, *args: Any, step: str) -> None:
        self._scheduler.call_soon(fn, ctx, *args, label=step, attempt=ctx.attempt_number)

    def _stop(self, final: ExitStatus) -> None:
        self._final_exit_status = ExitStatus(final)
        self._exit_loop = True

    def _arm(self, handler: StepOutcomeHandler) -> None:
        self._inflight = handler
        handler.start()

    def _settle(self, handler: StepOutcomeHandler) -> None:
        if self._inflight is handler:
            self._inflight = None

    def _watchdog(self, interval_s: float, step: str) -> WaitTimer:
        return WaitTimer(self._scheduler, interval_s, label=f"{step}:watchdog")

    def _check_interrupt(self) -> None:
        if self._interrupt_handled or not self._cancel.cancelled:
            return
        self._interrupt_handled = True
        logger.warning("Received interrupt (Ctrl-C). Please wait while cleaning up...")
        if self._inflight is not None:
            self._inflight.abandon()
            self._inflight = None
        self._scheduler.cancel_pending()
        ctx = self._context
        if ctx is None:
            self._stop(ExitStatus.INTERRUPTED)
            return
        self._next(self._teardown_device, ctx, ExitStatus.INTERRUPTED, step="teardown_device")

    # ----------------------------------------------------------------- steps

    def _begin(self, context: Optional[ExecutionContext] = None) -> None:
        if context is None:
            context = ExecutionContext(
                config=self._execution_config,
                attempt_number=self._policy.next_attempt_number,
            )
        self._context = context
        self._next(self._setup_execution, context, step="setup_execution")

    def _attempt_log_path(self, ctx: ExecutionContext) -> Path:
        n = ctx.attempt_number
        out = ctx.config.output_dir
        try:
            if out:
                out_dir = Path(out)
                out_dir.mkdir(parents=True, exist_ok=True)
                return out_dir / f"{n}-simulator.log"
            fd, name = tempfile.mkstemp(prefix=f"{n}-avd-stdout-{os.getpid()}-", suffix=".log")
            os.close(fd)
            return Path(name)
        except OSError as exc:
            fallback = Path("/tmp") / f"{n}-simulator.log"
            logger.error("ERROR: %s\nLeaving log in %s", exc, fallback)
            return fallback

    def _setup_execution(self, ctx: ExecutionContext) -> None:
        logger.info("Running Tests. Attempt Number %d.", ctx.attempt_number)
        self._stats.attempt_number = ctx.attempt_number

        if ctx.parser is not None:
            _close_quietly(ctx.parser)
        ctx.log_path = self._attempt_log_path(ctx)
        ctx.parser = self._parser_factory(ctx.log_path, ctx.config)
        if ctx.attempt_number == 1:
            ctx.parser.reset()
        ctx.pid = -1

        if ctx.device_created and ctx.runner is not None:
            if ctx.runner.is_device_alive():
                logger.info("Reusing device %s", ctx.runner.device_id)
                self._next(self._launch_app, ctx, step="launch_app")
                return
            logger.error("Kept device %s is gone", ctx.runner.device_id)
            ctx.device_crashed = True
            self._stats.record_failure("device_crash")
            self._next(self._teardown_device, ctx, ExitStatus.DEVICE_CRASHED, step="teardown_device")
            return

        ctx.runner = self._runner_factory(ctx.config)
        self._next(self._create_device, ctx, step="create_device")

    def _create_device(self, ctx: ExecutionContext) -> None:
        step = _label("Create Device", ctx.attempt_number)
        device_name = f"AVD{os.getpid()}-{ctx.attempt_number}"
        runner = ctx.runner
        assert runner is not None

        self._stats.start_timer(step)
        logger.info(step)

        handler = CreateDeviceHandler(
            self._scheduler,
            self._watchdog(ctx.config.create_timeout_s, "create_device"),
            name="create_device",
            attempt=ctx.attempt_number,
        )

        def begin_with() -> None:
            self._settle(handler)
            self._stats.end_timer(step)
            level = logging.ERROR if handler.error else logging.INFO
            logger.log(level, "Completed: %s %s", step, runner.device_id or device_name)

        def on_success() -> None:
            ctx.device_created = True
            self._next(self._install_app, ctx, step="install_app")

        def on_error(error: BaseException) -> None:
            self._stats.record_failure("device_create")
            logger.error("%s", error)
            # Nothing was created, so there is nothing to delete.
            self._next(
                self._teardown_device, ctx, ExitStatus.DEVICE_CREATION_FAILED, step="teardown_device"
            )

        def on_timeout() -> None:
            self._stats.record_failure("device_create")
            logger.error("Timeout: %s", step)
            self._next(
                self._teardown_device, ctx, ExitStatus.DEVICE_CREATION_FAILED, step="teardown_device"
            )

        handler.begin_with = begin_with
        handler.on_success = on_success
        handler.on_error = on_error
        handler.on_timeout = on_timeout
        self._arm(handler)
        try:
            runner.create_device(device_name, handler.completion)
        except Exception as exc:
            handler.completion(error=exc)

    def _install_app(self, ctx: ExecutionContext) -> None:
        step = _label("Install App", ctx.attempt_number)
        runner = ctx.runner
        assert runner is not None

        self._stats.start_timer(step)
        logger.info(step)

        error: Optional[BaseException] = None
        try:
            runner.install_app()
        except Exception as exc:
            error = exc

        self._stats.end_timer(step)
        logger.log(logging.ERROR if error else logging.INFO, "Completed: %s", step)

        if error is not None:
            self._stats.record_failure("app_install")
            logger.error("Could not install app on device: %s", error)
            self._next(
                self._teardown_device, ctx, ExitStatus.INSTALL_APP_FAILED, step="teardown_device"
            )
            return
        self._next(self._launch_app, ctx, step="launch_app")

    def _launch_app(self, ctx: ExecutionContext) -> None:
        step = _label("Launch App", ctx.attempt_number)
        run_step = _label("Run Tests", ctx.attempt_number)
        runner = ctx.runner
        assert runner is not None and ctx.parser is not None

        logger.info(step)
        self._stats.start_timer(step)
        self._stats.start_timer(run_step)
        # The launch budget covers the whole run; the monitor enforces what
        # is left of it once the watchdog below has been cancelled.
        ctx.run_deadline = self._scheduler.now() + float(ctx.config.launch_timeout_s)

        handler = LaunchHandler(
            self._scheduler,
            self._watchdog(ctx.config.launch_timeout_s, "launch_app"),
            name="launch_app",
            attempt=ctx.attempt_number,
        )

        def begin_with() -> None:
            self._settle(handler)
            self._stats.end_timer(step)
            level = logging.INFO if handler.pid > -1 else logging.ERROR
            logger.log(level, "Completed: %s", step)

        def on_success() -> None:
            ctx.pid = handler.pid
            self._next(self._monitor, ctx, ctx.config.poll_interval_s, step="monitor")

        def on_error(error: BaseException) -> None:
            self._stats.record_failure("app_launch")
            self._stats.end_timer(run_step)
            logger.error("Could not launch app and tests: %s", error)
            self._next(
                self._teardown_device, ctx, ExitStatus.LAUNCH_APP_FAILED, step="teardown_device"
            )

        def on_timeout() -> None:
            self._stats.record_failure("app_launch")
            self._stats.end_timer(run_step)
            logger.error("Timeout: %s", step)
            self._next(
                self._teardown_device, ctx, ExitStatus.LAUNCH_APP_FAILED, step="teardown_device"
            )

        handler.begin_with = begin_with
        handler.on_success = on_success
        handler.on_error = on_error
        handler.on_timeout = on_timeout
        self._arm(handler)
        try:
            runner.launch_app_and_run_tests(ctx.parser, handler.completion)
        except Exception as exc:
            handler.completion(error=exc)

    def _monitor(self, ctx: ExecutionContext, interval_s: float) -> None:
        runner = ctx.runner
        assert runner is not None
        run_step = _label("Run Tests", ctx.attempt_number)

        if not self._process_alive(ctx.pid) and runner.is_run_complete():
            self._stats.end_timer(run_step)
            self._next(self._runner_completed, ctx, step="runner_completed")
            return

        if not runner.is_device_alive():
            self._stats.end_timer(run_step)
            logger.error("DEVICE CRASHED!!!")
            ctx.device_crashed = True
            self._stats.record_failure("device_crash")
            self._next(self._teardown_device, ctx, ExitStatus.DEVICE_CRASHED, step="teardown_device")
            return

        delay = interval_s
        if ctx.run_deadline is not None:
            left = ctx.run_deadline - self._scheduler.now()
            if left <= 0:
                self._stats.end_timer(run_step)
                self._stats.record_failure("app_launch")
                logger.error("Timeout: %s", run_step)
                # Deleting the device also kills the instrumentation.
                self._next(
                    self._teardown_device, ctx, ExitStatus.LAUNCH_APP_FAILED, step="teardown_device"
                )
                return
            delay = min(delay, left)

        cfg = ctx.config
        next_interval = min(float(cfg.poll_max_interval_s), interval_s * float(cfg.poll_backoff))
        self._scheduler.call_later(
            delay,
            self._monitor,
            ctx,
            next_interval,
            label="monitor",
            attempt=ctx.attempt_number,
        )

    def _runner_completed(self, ctx: ExecutionContext) -> None:
        parser = ctx.parser
        runner = ctx.runner
        assert parser is not None and runner is not None

        parser.mark_complete()
        if ctx.is_last_attempt:
            # Final attempt: whatever is still pending gets reported as an error.
            parser.force_final_computation()

        if not ctx.device_crashed:
            self._emit_reports(ctx)

        status = ExitStatus.DEVICE_CRASHED if ctx.device_crashed else runner.current_test_exit_status()
        self._next(self._teardown_device, ctx, status, step="teardown_device")

    def _emit_reports(self, ctx: ExecutionContext) -> None:
        cfg = ctx.config
        parser = ctx.parser
        assert parser is not None
        n = ctx.attempt_number
        bundle = cfg.bundle_name
        wanted = (
            (cfg.plain_output, "plain", f"{n}-{bundle}-results.txt"),
            (cfg.junit_output, "junit", f"TEST-{bundle}-results.xml"),
            (cfg.json_output, "json", f"{n}-{bundle}-timings.json"),
        )
        for enabled, fmt, file_name in wanted:
            if not enabled:
                continue
            if cfg.output_dir:
                writer = ReportWriter.to_file(Path(cfg.output_dir) / file_name)
            else:
                writer = ReportWriter.to_stdout()
            try:
                writer.remove_file()
                writer.write_line(parser.render_report(fmt))
            except OSError as exc:
                logger.error("Could not write %s report: %s", fmt, exc)
            finally:
                writer.close()

    def _teardown_device(self, ctx: ExecutionContext, status: ExitStatus) -> None:
        ctx.exit_status = ExitStatus(status)
        runner = ctx.runner

        if not ctx.device_created or runner is None:
            self._next(self._finish, ctx, step="finish")
            return

        if ctx.exit_status in CONTINUE_STATUSES and self._policy.can_continue():
            logger.info(
                "Keeping device %s for attempt %d", runner.device_id, self._policy.retries + 2
            )
            self._next(self._finish, ctx, step="finish")
            return

        step = _label("Delete Device", ctx.attempt_number)
        self._stats.start_timer(step)
        logger.info(step)

        handler = DeleteDeviceHandler(
            self._scheduler,
            self._watchdog(ctx.config.delete_timeout_s, "delete_device"),
            name="delete_device",
            attempt=ctx.attempt_number,
        )

        def begin_with() -> None:
            self._settle(handler)
            self._stats.end_timer(step)
            ctx.device_created = False
            logger.log(logging.ERROR if handler.error else logging.INFO, "Completed: %s", step)

        def on_success() -> None:
            self._next(self._finish, ctx, step="finish")

        def on_error(error: BaseException) -> None:
            self._stats.record_failure("device_delete")
            logger.error("%s", error)
            self._next(self._finish, ctx, step="finish")

        def on_timeout() -> None:
            self._stats.record_failure("device_delete")
            logger.error("Timeout: %s", step)
            self._next(self._finish, ctx, step="finish")

        handler.begin_with = begin_with
        handler.on_success = on_success
        handler.on_error = on_error
        handler.on_timeout = on_timeout
        self._arm(handler)
        try:
            runner.delete_device(handler.completion)
        except Exception as exc:
            handler.completion(error=exc)

    def _finish(self, ctx: ExecutionContext) -> None:
        # ALL_PASSED is 0, so it has to be checked against this attempt's
        # status rather than the aggregate built in final_exit_status.
        status = ctx.exit_status
        self._attempts.append(AttemptRecord(ctx.attempt_number, status))

        if status == ExitStatus.INTERRUPTED:
            self._stop(status | ctx.final_exit_status)
            return

        if status == ExitStatus.TESTS_FAILED:
            self._next(self._retry, ctx, step="retry")
            return

        if status == ExitStatus.ALL_PASSED:
            if ctx.final_exit_status != ExitStatus.ALL_PASSED:
                # A timeout/crash happened earlier in this lineage.
                self._next(self._retry, ctx, step="retry")
            else:
                self._stop(ExitStatus.ALL_PASSED)
            return

        if status in TOOLING_FAILURES:
            self._next(self._retry, ctx, step="retry")
            return

        if status in CONTINUE_STATUSES:
            ctx.final_exit_status |= status
            self._next(self._proceed, ctx, step="proceed")
            return

        logger.error("Unexpected exit status %s; stopping", describe_exit_status(status))
        self._stop(status | ctx.final_exit_status)

    # ------------------------------------------------------------ retry policy

    def _log_policy(self, ctx: ExecutionContext) -> None:
        logger.info("Exit Status: %s", describe_exit_status(ctx.exit_status))
        logger.info("Failure Tolerance: %d", self._policy.failure_tolerance)
        logger.info("Retry count: %d", self._policy.retries)

    def _retry(self, ctx: ExecutionContext) -> None:
        """Restart from scratch: new context, new device, fresh config copy."""

        if not self._policy.can_restart():
            if self._policy.failure_tolerance > 0:
                logger.error("Too many retries have occurred. Giving up.")
            else:
                logger.warning("No failure tolerance left. Giving up.")
            self._stop(ctx.exit_status | ctx.final_exit_status)
            return

        if ctx.parser is not None:
            ctx.parser.reset()
            _close_quietly(ctx.parser)
        self._policy.consume_restart()
        self._execution_config = self._config.copy()
        self._log_policy(ctx)
        self._scheduler.call_soon(self._begin, label="restart")

    def _proceed(self, ctx: ExecutionContext) -> None:
        """Continue in place: same context and device, next attempt."""

        if not self._policy.can_continue():
            self._stop(ctx.exit_status | ctx.final_exit_status)
            logger.error("Too many retries have occurred. Giving up.")
            return

        self._policy.consume_continue()
        self._log_policy(ctx)
        ctx.attempt_number = self._policy.next_attempt_number
        ctx.exit_status = ExitStatus.ALL_PASSED
        ctx.device_crashed = False
        self._begin(ctx)
