from __future__ import annotations

from dataclasses import dataclass


@dataclass
class RetryPolicy:
    """Budgets shared by every attempt of one run.

    * ``failure_tolerance``: how many more restarts (new device, fresh
      configuration) are allowed.
    * ``retries``: attempts already used by either restarts or continues.
    * ``max_retries``: hard cap on ``retries``; once reached nothing else runs.
    """

    failure_tolerance: int
    max_retries: int
    retries: int = 0

    def __post_init__(self) -> None:
        if self.failure_tolerance < 0:
            raise ValueError("failure_tolerance must be >= 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

    @property
    def exhausted(self) -> bool:
        return self.retries >= self.max_retries

    @property
    def next_attempt_number(self) -> int:
        return self.retries + 1

    def can_restart(self) -> bool:
        return self.failure_tolerance > 0 and not self.exhausted

    def can_continue(self) -> bool:
        return not self.exhausted

    def consume_restart(self) -> int:
        if not self.can_restart():
            raise RuntimeError("restart budget exhausted")
        self.failure_tolerance -= 1
        self.retries += 1
        return self.next_attempt_number

    def consume_continue(self) -> int:
        if not self.can_continue():
            raise RuntimeError("retry budget exhausted")
        self.retries += 1
        return self.next_attempt_number
