"""Result parsing and report output."""

from __future__ import annotations

from avd_runner.reporting.instrumentation_parser import InstrumentationResultParser
from avd_runner.reporting.reporters import REPORT_FORMATS, render_report
from avd_runner.reporting.results import TestResult, TestStatus
from avd_runner.reporting.writer import ReportWriter, WriterDestination

__all__ = [
    "REPORT_FORMATS",
    "InstrumentationResultParser",
    "ReportWriter",
    "TestResult",
    "TestStatus",
    "WriterDestination",
    "render_report",
]
