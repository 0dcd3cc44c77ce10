from __future__ import annotations

import enum


class ExitStatus(enum.IntFlag):
    """Outcome of one attempt, and the process exit code of the whole run.

    Exactly one member describes a single attempt. Members are distinct bits
    so the run can fold the outcomes of several attempts into one value.
    """

    ALL_PASSED = 0
    TESTS_FAILED = 1 << 0
    DEVICE_CREATION_FAILED = 1 << 1
    INSTALL_APP_FAILED = 1 << 2
    INTERRUPTED = 1 << 3
    DEVICE_CRASHED = 1 << 4
    LAUNCH_APP_FAILED = 1 << 5
    TEST_TIMEOUT = 1 << 6
    APP_CRASHED = 1 << 7


_DISPLAY_NAMES: dict[ExitStatus, str] = {
    ExitStatus.TESTS_FAILED: "TestsFailed",
    ExitStatus.DEVICE_CREATION_FAILED: "DeviceCreationFailed",
    ExitStatus.INSTALL_APP_FAILED: "InstallAppFailed",
    ExitStatus.INTERRUPTED: "Interrupted",
    ExitStatus.DEVICE_CRASHED: "DeviceCrashed",
    ExitStatus.LAUNCH_APP_FAILED: "LaunchAppFailed",
    ExitStatus.TEST_TIMEOUT: "TestTimeout",
    ExitStatus.APP_CRASHED: "AppCrashed",
}

# Tooling failures always get a brand new device.
TOOLING_FAILURES = frozenset(
    {
        ExitStatus.DEVICE_CREATION_FAILED,
        ExitStatus.DEVICE_CRASHED,
        ExitStatus.INSTALL_APP_FAILED,
        ExitStatus.LAUNCH_APP_FAILED,
    }
)

# Harness failures that are retried in place, on the same device.
CONTINUE_STATUSES = frozenset({ExitStatus.TEST_TIMEOUT, ExitStatus.APP_CRASHED})


def describe_exit_status(status: ExitStatus | int) -> str:
    """Human readable form, e.g. ``AllPassed`` or ``TestTimeout|AppCrashed``."""

    value = int(status)
    if value == 0:
        return "AllPassed"
    names = [name for member, name in _DISPLAY_NAMES.items() if value & int(member)]
    unknown = value & ~sum(int(m) for m in _DISPLAY_NAMES)
    if unknown:
        names.append(f"Unknown({unknown:#x})")
    return "|".join(names)
