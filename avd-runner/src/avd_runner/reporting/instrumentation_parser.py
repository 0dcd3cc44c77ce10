"""Parser for raw ``am instrument -r`` output.

The raw protocol is a sequence of key/value blocks::

    INSTRUMENTATION_STATUS: class=com.example.FooTest
    INSTRUMENTATION_STATUS: test=testBar
    INSTRUMENTATION_STATUS_CODE: 1
    ...
    INSTRUMENTATION_STATUS: stack=java.lang.AssertionError: boom
        at com.example.FooTest.testBar(FooTest.java:12)
    INSTRUMENTATION_STATUS_CODE: -2
    INSTRUMENTATION_RESULT: stream=
    INSTRUMENTATION_CODE: -1

Values may span several lines; a line without a known prefix continues the
value of the last key.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from avd_runner.exit_status import ExitStatus
from avd_runner.reporting.reporters import render_report
from avd_runner.reporting.results import TestResult, TestStatus
from avd_runner.reporting.writer import ReportWriter

logger = logging.getLogger(__name__)

_STATUS = "INSTRUMENTATION_STATUS: "
_STATUS_CODE = "INSTRUMENTATION_STATUS_CODE: "
_RESULT = "INSTRUMENTATION_RESULT: "
_CODE = "INSTRUMENTATION_CODE: "
_FAILED = "INSTRUMENTATION_FAILED: "
_ABORTED = "INSTRUMENTATION_ABORTED: "

_CODE_START = 1
_CODE_OK = 0
_CODE_ERROR = -1
_CODE_FAILURE = -2
_CODE_IGNORED = -3
_CODE_ASSUMPTION_FAILURE = -4


class InstrumentationResultParser:
    def __init__(
        self,
        writer: Optional[ReportWriter] = None,
        *,
        suite_name: str = "tests",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._writer = writer
        self._clock = clock
        self._lock = threading.RLock()
        self.suite_name = suite_name
        self._init_state()

    def _init_state(self) -> None:
        self._tests: List[TestResult] = []
        self._current: Optional[TestResult] = None
        self._status: Dict[str, str] = {}
        self._result: Dict[str, str] = {}
        self._last_bucket: Optional[Dict[str, str]] = None
        self._last_key: Optional[str] = None
        self.instrumentation_code: Optional[int] = None
        self.instrumentation_failure: Optional[str] = None
        self.app_crashed = False
        self.timed_out = False
        self.completed = False
        self.finalized = False

    # ------------------------------------------------------------------ input

    def feed_line(self, line: str) -> None:
        line = line.rstrip("\r\n")
        if self._writer is not None:
            self._writer.write_line(line)
        with self._lock:
            self._parse_line(line)

    def feed_text(self, text: str) -> None:
        for line in text.splitlines():
            self.feed_line(line)

    def _parse_line(self, line: str) -> None:
        if line.startswith(_STATUS_CODE):
            self._on_status_code(_parse_int(line[len(_STATUS_CODE) :]))
            return
        if line.startswith(_STATUS):
            self._store(self._status, line[len(_STATUS) :])
            return
        if line.startswith(_RESULT):
            self._store(self._result, line[len(_RESULT) :])
            self._check_crash(self._result)
            return
        if line.startswith(_CODE):
            self.instrumentation_code = _parse_int(line[len(_CODE) :])
            self._last_bucket = None
            return
        if line.startswith(_FAILED) or line.startswith(_ABORTED):
            self.instrumentation_failure = line.split(": ", 1)[1].strip()
            self._last_bucket = None
            return
        if self._last_bucket is not None and self._last_key is not None:
            prev = self._last_bucket.get(self._last_key, "")
            self._last_bucket[self._last_key] = f"{prev}\n{line}" if prev else line
            if self._last_bucket is self._result:
                self._check_crash(self._result)

    def _store(self, bucket: Dict[str, str], payload: str) -> None:
        key, _, value = payload.partition("=")
        key = key.strip()
        bucket[key] = value
        self._last_bucket = bucket
        self._last_key = key

    def _check_crash(self, result: Dict[str, str]) -> None:
        text = " ".join(result.get(k, "") for k in ("shortMsg", "longMsg"))
        if "Process crashed" in text or "crashed" in result.get("shortMsg", "").lower():
            self.app_crashed = True

    def _on_status_code(self, code: Optional[int]) -> None:
        status, self._status = self._status, {}
        self._last_bucket = None
        self._last_key = None
        class_name = status.get("class", "").strip()
        name = status.get("test", "").strip()
        if code is None or not class_name or not name:
            return

        now = self._clock()
        if code == _CODE_START:
            result = TestResult(class_name, name, TestStatus.RUNNING, started_at=now)
            self._tests.append(result)
            self._current = result
            return

        result = self._find_running(class_name, name)
        if result is None:
            result = TestResult(class_name, name, TestStatus.RUNNING, started_at=now)
            self._tests.append(result)
        result.ended_at = now
        if code == _CODE_OK:
            result.status = TestStatus.PASSED
        elif code == _CODE_FAILURE:
            result.status = TestStatus.FAILED
        elif code in (_CODE_IGNORED, _CODE_ASSUMPTION_FAILURE):
            result.status = TestStatus.SKIPPED
        else:
            result.status = TestStatus.ERROR
        stack = status.get("stack")
        if stack:
            result.message = stack.strip()
        if self._current is result:
            self._current = None

    def _find_running(self, class_name: str, name: str) -> Optional[TestResult]:
        for result in reversed(self._tests):
            if (
                result.class_name == class_name
                and result.name == name
                and result.status is TestStatus.RUNNING
            ):
                return result
        return None

    # --------------------------------------------------------------- lifecycle

    def reset(self) -> None:
        with self._lock:
            self._init_state()

    def current_test(self) -> Optional[TestResult]:
        with self._lock:
            return self._current

    def current_test_elapsed(self) -> Optional[float]:
        with self._lock:
            if self._current is None:
                return None
            return self._clock() - self._current.started_at

    def mark_timeout(self, message: str = "test timed out") -> Optional[TestResult]:
        with self._lock:
            self.timed_out = True
            result, self._current = self._current, None
            if result is not None:
                result.status = TestStatus.TIMED_OUT
                result.ended_at = self._clock()
                result.message = message
            return result

    def mark_complete(self) -> None:
        with self._lock:
            if self._current is not None:
                self._current.status = TestStatus.CRASHED
                self._current.ended_at = self._clock()
                self._current.message = self._current.message or "test did not finish"
                self._current = None
                if not self.timed_out:
                    self.app_crashed = True
            if (
                self.instrumentation_code is None
                and not self.timed_out
                and (self.instrumentation_failure is not None or self._tests)
            ):
                # Instrumentation died before reporting a result.
                self.app_crashed = True
            self.completed = True

    def force_final_computation(self) -> None:
        """Last attempt: report pending crashed/timed-out tests as errors."""

        with self._lock:
            if not self.completed:
                self.mark_complete()
            for result in self._tests:
                if result.status in (TestStatus.CRASHED, TestStatus.TIMED_OUT, TestStatus.RUNNING):
                    result.status = TestStatus.ERROR
            self.finalized = True

    # ----------------------------------------------------------------- output

    def results(self) -> List[TestResult]:
        with self._lock:
            return list(self._tests)

    def executed_test_ids(self) -> List[str]:
        with self._lock:
            return [r.test_id for r in self._tests if r.status is not TestStatus.RUNNING]

    def exit_status(self) -> ExitStatus:
        with self._lock:
            if self.timed_out:
                return ExitStatus.TEST_TIMEOUT
            if self.app_crashed:
                return ExitStatus.APP_CRASHED
            if self.instrumentation_failure is not None and not self._tests:
                return ExitStatus.APP_CRASHED
            if any(r.failing for r in self._tests):
                return ExitStatus.TESTS_FAILED
            return ExitStatus.ALL_PASSED

    def render_report(self, fmt: str) -> str:
        return render_report(fmt, self.results(), suite_name=self.suite_name)

    def close(self) -> None:
        if self._writer is not None:
            self._writer.close()


def _parse_int(raw: str) -> Optional[int]:
    try:
        return int(raw.strip())
    except ValueError:
        logger.debug("unparseable instrumentation code: %r", raw)
        return None
