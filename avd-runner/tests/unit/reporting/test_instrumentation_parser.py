from __future__ import annotations

from pathlib import Path

from avd_fakes import FakeClock

from avd_runner.exit_status import ExitStatus
from avd_runner.reporting.instrumentation_parser import InstrumentationResultParser
from avd_runner.reporting.results import TestStatus
from avd_runner.reporting.writer import ReportWriter


def _block(cls: str, test: str, code: int, *extra: str) -> str:
    lines = [
        f"INSTRUMENTATION_STATUS: class={cls}",
        f"INSTRUMENTATION_STATUS: test={test}",
        *extra,
        f"INSTRUMENTATION_STATUS_CODE: {code}",
    ]
    return "\n".join(lines) + "\n"


def _run(parser: InstrumentationResultParser, clock: FakeClock, cls: str, test: str, code: int, *extra: str) -> None:
    parser.feed_text(_block(cls, test, 1))
    clock.advance(1.5)
    parser.feed_text(_block(cls, test, code, *extra))


def test_mixed_results_and_multiline_stack() -> None:
    clock = FakeClock(start=0.0)
    parser = InstrumentationResultParser(suite_name="SampleTests", clock=clock.now)
    _run(parser, clock, "com.example.FooTest", "testPass", 0)
    _run(
        parser,
        clock,
        "com.example.FooTest",
        "testFail",
        -2,
        "INSTRUMENTATION_STATUS: stack=java.lang.AssertionError: expected 1",
        "\tat com.example.FooTest.testFail(FooTest.java:12)",
    )
    _run(parser, clock, "com.example.BarTest", "testIgnored", -3)
    parser.feed_text("INSTRUMENTATION_RESULT: stream=\nFAILURES!!!\nINSTRUMENTATION_CODE: -1\n")
    parser.mark_complete()

    by_id = {r.test_id: r for r in parser.results()}
    assert by_id["com.example.FooTest#testPass"].status is TestStatus.PASSED
    assert by_id["com.example.FooTest#testPass"].duration_s == 1.5
    failed = by_id["com.example.FooTest#testFail"]
    assert failed.status is TestStatus.FAILED
    assert failed.message.splitlines() == [
        "java.lang.AssertionError: expected 1",
        "\tat com.example.FooTest.testFail(FooTest.java:12)",
    ]
    assert by_id["com.example.BarTest#testIgnored"].status is TestStatus.SKIPPED
    assert parser.instrumentation_code == -1
    assert parser.exit_status() == ExitStatus.TESTS_FAILED


def test_all_passed() -> None:
    clock = FakeClock()
    parser = InstrumentationResultParser(clock=clock.now)
    _run(parser, clock, "com.example.FooTest", "testPass", 0)
    parser.feed_line("INSTRUMENTATION_CODE: -1")
    parser.mark_complete()
    assert parser.exit_status() == ExitStatus.ALL_PASSED


def test_process_crash_in_result_block() -> None:
    clock = FakeClock()
    parser = InstrumentationResultParser(clock=clock.now)
    parser.feed_text(_block("com.example.FooTest", "testBoom", 1))
    parser.feed_text(
        "INSTRUMENTATION_RESULT: shortMsg=Process crashed.\n"
        "INSTRUMENTATION_RESULT: longMsg=java.lang.NullPointerException\n"
        "INSTRUMENTATION_CODE: 0\n"
    )
    parser.mark_complete()

    assert parser.exit_status() == ExitStatus.APP_CRASHED
    assert parser.results()[0].status is TestStatus.CRASHED
    assert parser.executed_test_ids() == ["com.example.FooTest#testBoom"]


def test_stream_ending_without_code_is_a_crash() -> None:
    clock = FakeClock()
    parser = InstrumentationResultParser(clock=clock.now)
    _run(parser, clock, "com.example.FooTest", "testPass", 0)
    parser.mark_complete()
    assert parser.app_crashed
    assert parser.exit_status() == ExitStatus.APP_CRASHED


def test_instrumentation_failed_without_tests() -> None:
    parser = InstrumentationResultParser()
    parser.feed_line("INSTRUMENTATION_FAILED: com.example.test/androidx.test.runner.AndroidJUnitRunner")
    assert parser.exit_status() == ExitStatus.APP_CRASHED


def test_timeout_wins_over_crash_and_final_computation_turns_it_into_error() -> None:
    clock = FakeClock()
    parser = InstrumentationResultParser(clock=clock.now)
    parser.feed_text(_block("com.example.FooTest", "testHang", 1))
    clock.advance(10.0)
    assert parser.current_test_elapsed() == 10.0
    timed_out = parser.mark_timeout("test exceeded 5.0s")
    assert timed_out is not None and timed_out.status is TestStatus.TIMED_OUT
    parser.mark_complete()

    assert not parser.app_crashed
    assert parser.exit_status() == ExitStatus.TEST_TIMEOUT

    parser.force_final_computation()
    assert parser.results()[0].status is TestStatus.ERROR
    assert parser.finalized


def test_reset_clears_state() -> None:
    clock = FakeClock()
    parser = InstrumentationResultParser(clock=clock.now)
    _run(parser, clock, "com.example.FooTest", "testFail", -2)
    parser.reset()
    assert parser.results() == []
    assert parser.current_test() is None
    assert parser.exit_status() == ExitStatus.ALL_PASSED


def test_raw_lines_are_copied_to_the_log(tmp_path: Path) -> None:
    log = tmp_path / "1-simulator.log"
    parser = InstrumentationResultParser(ReportWriter.to_file(log))
    parser.feed_line("INSTRUMENTATION_STATUS: class=com.example.FooTest\r\n")
    parser.feed_line("garbage before any key\n")
    parser.close()

    assert log.read_text(encoding="utf-8").splitlines() == [
        "INSTRUMENTATION_STATUS: class=com.example.FooTest",
        "garbage before any key",
    ]


def test_render_report_uses_suite_name() -> None:
    clock = FakeClock()
    parser = InstrumentationResultParser(suite_name="SampleTests", clock=clock.now)
    _run(parser, clock, "com.example.FooTest", "testPass", 0)
    assert parser.render_report("plain").startswith("Test suite: SampleTests")
