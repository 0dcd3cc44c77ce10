"""Report renderers: plain text, JUnit XML and JSON timings."""

from __future__ import annotations

import json
import xml.etree.ElementTree as ET
from collections import Counter, OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Sequence

from avd_runner.reporting.results import TestResult, TestStatus

REPORT_FORMATS = ("plain", "junit", "json")


def _summary_counts(results: Sequence[TestResult]) -> Dict[str, int]:
    counts = Counter(r.status for r in results)
    return {
        "total": len(results),
        "passed": counts[TestStatus.PASSED],
        "failed": counts[TestStatus.FAILED],
        "errors": counts[TestStatus.ERROR]
        + counts[TestStatus.CRASHED]
        + counts[TestStatus.TIMED_OUT]
        + counts[TestStatus.RUNNING],
        "skipped": counts[TestStatus.SKIPPED],
    }


def render_plain(results: Sequence[TestResult], *, suite_name: str = "tests") -> str:
    lines: List[str] = [f"Test suite: {suite_name}"]
    for r in results:
        lines.append(f"{r.status.value.upper():<10} {r.test_id} ({r.duration_s:.3f}s)")
        if r.failing and r.message:
            lines.extend("    " + ln for ln in r.message.splitlines())
    c = _summary_counts(results)
    total_s = sum(r.duration_s for r in results)
    lines.append(
        f"Executed {c['total']} tests: {c['passed']} passed, {c['failed']} failed, "
        f"{c['errors']} errors, {c['skipped']} skipped in {total_s:.3f}s"
    )
    return "\n".join(lines)


def _group_by_class(results: Iterable[TestResult]) -> "OrderedDict[str, List[TestResult]]":
    groups: "OrderedDict[str, List[TestResult]]" = OrderedDict()
    for r in results:
        groups.setdefault(r.class_name, []).append(r)
    return groups


def render_junit(results: Sequence[TestResult], *, suite_name: str = "tests") -> str:
    c = _summary_counts(results)
    root = ET.Element(
        "testsuites",
        {
            "name": suite_name,
            "tests": str(c["total"]),
            "failures": str(c["failed"]),
            "errors": str(c["errors"]),
            "skipped": str(c["skipped"]),
            "time": f"{sum(r.duration_s for r in results):.3f}",
        },
    )
    for class_name, group in _group_by_class(results).items():
        gc = _summary_counts(group)
        suite = ET.SubElement(
            root,
            "testsuite",
            {
                "name": class_name,
                "tests": str(gc["total"]),
                "failures": str(gc["failed"]),
                "errors": str(gc["errors"]),
                "skipped": str(gc["skipped"]),
                "time": f"{sum(r.duration_s for r in group):.3f}",
            },
        )
        for r in group:
            case = ET.SubElement(
                suite,
                "testcase",
                {"classname": r.class_name, "name": r.name, "time": f"{r.duration_s:.3f}"},
            )
            message = (r.message or "").strip()
            first_line = message.splitlines()[0] if message else r.status.value
            if r.status is TestStatus.FAILED:
                node = ET.SubElement(case, "failure", {"message": first_line})
                node.text = message
            elif r.status is TestStatus.SKIPPED:
                ET.SubElement(case, "skipped")
            elif r.failing or r.status is TestStatus.RUNNING:
                node = ET.SubElement(
                    case, "error", {"message": first_line, "type": r.status.value}
                )
                node.text = message
    ET.indent(root)
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(root, encoding="unicode")


def render_json(results: Sequence[TestResult], *, suite_name: str = "tests") -> str:
    payload: Dict[str, Any] = {
        "suite": suite_name,
        "summary": _summary_counts(results),
        "total_duration_s": round(sum(r.duration_s for r in results), 3),
        "tests": [
            {
                "class": r.class_name,
                "name": r.name,
                "status": r.status.value,
                "duration_s": round(r.duration_s, 3),
            }
            for r in results
        ],
    }
    return json.dumps(payload, indent=2, ensure_ascii=False)


_RENDERERS: Dict[str, Callable[..., str]] = {
    "plain": render_plain,
    "junit": render_junit,
    "json": render_json,
}


def render_report(fmt: str, results: Sequence[TestResult], *, suite_name: str = "tests") -> str:
    renderer = _RENDERERS.get(str(fmt).strip().lower())
    if renderer is None:
        raise ValueError(f"unknown report format: {fmt!r} (expected one of {REPORT_FORMATS})")
    return renderer(results, suite_name=suite_name)
