from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional


class TestStatus(str, enum.Enum):
    __test__ = False

    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"
    CRASHED = "crashed"
    TIMED_OUT = "timed_out"


FAILING_STATUSES = frozenset(
    {TestStatus.FAILED, TestStatus.ERROR, TestStatus.CRASHED, TestStatus.TIMED_OUT}
)


@dataclass
class TestResult:
    class_name: str
    name: str
    status: TestStatus
    started_at: float
    ended_at: Optional[float] = None
    message: Optional[str] = None

    __test__ = False

    @property
    def test_id(self) -> str:
        return f"{self.class_name}#{self.name}"

    @property
    def duration_s(self) -> float:
        if self.ended_at is None:
            return 0.0
        return max(0.0, self.ended_at - self.started_at)

    @property
    def failing(self) -> bool:
        return self.status in FAILING_STATUSES
