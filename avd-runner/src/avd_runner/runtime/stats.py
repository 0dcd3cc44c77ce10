"""Per-run timing and failure counters.

One :class:`RunStats` instance is created by the caller and handed to the
orchestrator; nothing here is global.
"""

from __future__ import annotations

import json
import logging
import time
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

FAILURE_KINDS = (
    "device_create",
    "app_install",
    "app_launch",
    "device_crash",
    "device_delete",
)


@dataclass
class _Timer:
    attempt: int
    started_at: float
    ended_at: Optional[float] = None

    @property
    def elapsed_s(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return self.ended_at - self.started_at


class RunStats:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.attempt_number = 1
        self._timers: Dict[str, _Timer] = {}
        self._failures: Counter[tuple[int, str]] = Counter()

    def start_timer(self, label: str) -> None:
        self._timers[label] = _Timer(attempt=self.attempt_number, started_at=self._clock())

    def end_timer(self, label: str) -> Optional[float]:
        """Stop ``label``; returns elapsed seconds. Ending twice keeps the first end."""

        timer = self._timers.get(label)
        if timer is None:
            logger.debug("end_timer for unknown label %r", label)
            return None
        if timer.ended_at is None:
            timer.ended_at = self._clock()
        return timer.elapsed_s

    def elapsed(self, label: str) -> Optional[float]:
        timer = self._timers.get(label)
        return timer.elapsed_s if timer is not None else None

    def record_failure(self, kind: str) -> None:
        if kind not in FAILURE_KINDS:
            raise ValueError(f"unknown failure kind: {kind!r}")
        self._failures[(self.attempt_number, kind)] += 1

    def failure_count(self, kind: str, *, attempt: Optional[int] = None) -> int:
        return sum(
            n
            for (a, k), n in self._failures.items()
            if k == kind and (attempt is None or a == attempt)
        )

    def to_dict(self) -> Dict[str, Any]:
        timers = {
            label: {
                "attempt": t.attempt,
                "elapsed_s": round(t.elapsed_s, 3) if t.elapsed_s is not None else None,
            }
            for label, t in self._timers.items()
        }
        failures: Dict[str, Dict[str, int]] = {}
        for (attempt, kind), n in sorted(self._failures.items()):
            failures.setdefault(str(attempt), {})[kind] = n
        return {
            "attempts": self.attempt_number,
            "timers": timers,
            "failures": failures,
            "failure_totals": {k: self.failure_count(k) for k in FAILURE_KINDS},
        }

    def write_json(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(
            json.dumps(self.to_dict(), sort_keys=True, indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
        tmp_path.replace(path)
        return path
