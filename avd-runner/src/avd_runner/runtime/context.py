from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from avd_runner.exit_status import ExitStatus

if TYPE_CHECKING:
    from avd_runner.config import RunConfig
    from avd_runner.runtime.device import DeviceRunner, ResultParser


@dataclass
class ExecutionContext:
    """Mutable record of one attempt lineage.

    A restart builds a new context; a continue reuses this one with a bumped
    ``attempt_number`` and ``exit_status`` reset to ``ALL_PASSED``.
    """

    config: "RunConfig"
    attempt_number: int
    runner: Optional["DeviceRunner"] = None
    parser: Optional["ResultParser"] = None
    log_path: Optional[Path] = None
    pid: int = -1
    run_deadline: Optional[float] = None
    device_created: bool = False
    device_crashed: bool = False
    exit_status: ExitStatus = ExitStatus.ALL_PASSED
    final_exit_status: ExitStatus = ExitStatus.ALL_PASSED

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt_number > int(self.config.error_retries_count)
