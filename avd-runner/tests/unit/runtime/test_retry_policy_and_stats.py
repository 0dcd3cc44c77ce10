from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
from avd_fakes import FakeClock

from avd_runner.config import RunConfig
from avd_runner.runtime.context import ExecutionContext
from avd_runner.runtime.process import is_process_alive
from avd_runner.runtime.retry_policy import RetryPolicy
from avd_runner.runtime.stats import RunStats


def test_zero_tolerance_never_restarts_but_can_continue() -> None:
    policy = RetryPolicy(failure_tolerance=0, max_retries=4)
    assert not policy.can_restart()
    assert policy.can_continue()
    with pytest.raises(RuntimeError):
        policy.consume_restart()


def test_restart_consumes_tolerance_and_retries() -> None:
    policy = RetryPolicy(failure_tolerance=2, max_retries=4)
    assert policy.consume_restart() == 2
    assert policy.failure_tolerance == 1
    assert policy.retries == 1


def test_max_retries_caps_both_kinds() -> None:
    policy = RetryPolicy(failure_tolerance=5, max_retries=2)
    policy.consume_continue()
    policy.consume_restart()
    assert policy.exhausted
    assert not policy.can_restart()
    assert not policy.can_continue()
    with pytest.raises(RuntimeError):
        policy.consume_continue()


def test_negative_budgets_rejected() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(failure_tolerance=-1, max_retries=1)
    with pytest.raises(ValueError):
        RetryPolicy(failure_tolerance=0, max_retries=-1)


def test_context_last_attempt() -> None:
    ctx = ExecutionContext(config=RunConfig(error_retries_count=1), attempt_number=1)
    assert not ctx.is_last_attempt
    ctx.attempt_number = 2
    assert ctx.is_last_attempt


def test_stats_timers_keep_first_end() -> None:
    clock = FakeClock(start=0.0)
    stats = RunStats(clock=clock.now)
    stats.start_timer("[Attempt 1] Create Device")
    clock.advance(2.0)
    assert stats.end_timer("[Attempt 1] Create Device") == pytest.approx(2.0)
    clock.advance(3.0)
    assert stats.end_timer("[Attempt 1] Create Device") == pytest.approx(2.0)
    assert stats.end_timer("never started") is None


def test_stats_failures_are_per_attempt(tmp_path: Path) -> None:
    stats = RunStats(clock=FakeClock().now)
    stats.record_failure("device_create")
    stats.attempt_number = 2
    stats.record_failure("device_create")
    stats.record_failure("app_launch")

    assert stats.failure_count("device_create") == 2
    assert stats.failure_count("device_create", attempt=2) == 1
    with pytest.raises(ValueError):
        stats.record_failure("cosmic_rays")

    out = stats.write_json(tmp_path / "nested" / "stats.json")
    payload = json.loads(out.read_text(encoding="utf-8"))
    assert payload["attempts"] == 2
    assert payload["failures"] == {"1": {"device_create": 1}, "2": {"app_launch": 1, "device_create": 1}}
    assert payload["failure_totals"]["device_crash"] == 0
    assert not (tmp_path / "nested" / "stats.json.tmp").exists()


def test_is_process_alive() -> None:
    assert is_process_alive(os.getpid())
    assert not is_process_alive(-1)
    assert not is_process_alive(0)
