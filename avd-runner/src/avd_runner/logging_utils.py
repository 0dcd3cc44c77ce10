"""Logging helpers.

Every call dispatched by the scheduler runs inside a :class:`StepLogContext`.
:class:`StepContextFilter` copies that context onto log records so progress
lines can say which step (and which attempt) produced them.
"""

from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

DEFAULT_FORMAT = "[%(levelname)s] [%(step)s#%(attempt)s] %(message)s"


@dataclass(frozen=True)
class StepLogContext:
    step: str
    attempt: Optional[int]
    scheduled_at: float


_current_step: contextvars.ContextVar[Optional[StepLogContext]] = contextvars.ContextVar(
    "avd_runner_current_step", default=None
)


def current_step() -> Optional[StepLogContext]:
    return _current_step.get()


@contextmanager
def step_log_context(ctx: StepLogContext) -> Iterator[StepLogContext]:
    token = _current_step.set(ctx)
    try:
        yield ctx
    finally:
        _current_step.reset(token)


class StepContextFilter(logging.Filter):
    """Attach ``step`` and ``attempt`` attributes to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = _current_step.get()
        if not hasattr(record, "step"):
            record.step = ctx.step if ctx is not None else "-"
        if not hasattr(record, "attempt"):
            attempt = ctx.attempt if ctx is not None else None
            record.attempt = attempt if attempt is not None else "-"
        return True


def configure_logging(*, verbose: bool = False, fmt: str = DEFAULT_FORMAT) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=fmt)
    step_filter = StepContextFilter()
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, StepContextFilter) for f in handler.filters):
            handler.addFilter(step_filter)
