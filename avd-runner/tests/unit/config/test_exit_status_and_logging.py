from __future__ import annotations

import logging

from avd_runner.exit_status import (
    CONTINUE_STATUSES,
    TOOLING_FAILURES,
    ExitStatus,
    describe_exit_status,
)
from avd_runner.logging_utils import StepContextFilter, StepLogContext, step_log_context


def test_exit_codes_are_distinct_bits() -> None:
    values = [int(s) for s in ExitStatus if s is not ExitStatus.ALL_PASSED]
    assert int(ExitStatus.ALL_PASSED) == 0
    assert values == [1, 2, 4, 8, 16, 32, 64, 128]


def test_categories_do_not_overlap() -> None:
    assert not (TOOLING_FAILURES & CONTINUE_STATUSES)
    assert ExitStatus.TESTS_FAILED not in TOOLING_FAILURES | CONTINUE_STATUSES


def test_describe_exit_status() -> None:
    assert describe_exit_status(ExitStatus.ALL_PASSED) == "AllPassed"
    assert describe_exit_status(ExitStatus.TEST_TIMEOUT) == "TestTimeout"
    assert (
        describe_exit_status(ExitStatus.INTERRUPTED | ExitStatus.APP_CRASHED)
        == "Interrupted|AppCrashed"
    )
    assert describe_exit_status(256) == "Unknown(0x100)"


def _record() -> logging.LogRecord:
    return logging.LogRecord("avd_runner", logging.INFO, __file__, 1, "hello", None, None)


def test_step_filter_outside_and_inside_a_step() -> None:
    f = StepContextFilter()
    outside = _record()
    assert f.filter(outside)
    assert (outside.step, outside.attempt) == ("-", "-")

    with step_log_context(StepLogContext(step="launch_app", attempt=2, scheduled_at=0.0)):
        inside = _record()
        f.filter(inside)
    assert (inside.step, inside.attempt) == ("launch_app", 2)
