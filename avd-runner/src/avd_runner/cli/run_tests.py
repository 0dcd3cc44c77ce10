from __future__ import annotations

import argparse
import logging
import os
import signal
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from avd_runner.config import ConfigError, RunConfig, load_run_config
from avd_runner.exit_status import describe_exit_status
from avd_runner.logging_utils import configure_logging
from avd_runner.runtime.android.emulator_runner import EmulatorRunner
from avd_runner.runtime.orchestrator import Orchestrator
from avd_runner.runtime.scheduler import CancellationToken, install_interrupt_handler
from avd_runner.runtime.stats import RunStats

logger = logging.getLogger("avd_runner")


def _split_csv(values: Optional[Sequence[str]]) -> Optional[list[str]]:
    if not values:
        return None
    out: list[str] = []
    for value in values:
        out.extend(part.strip() for part in value.split(",") if part.strip())
    return out


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run an instrumentation test APK on a throwaway Android emulator."
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional YAML/JSON run config; command line flags override it.",
    )

    parser.add_argument("--app", dest="app_path", type=str, default=None, help="App under test APK.")
    parser.add_argument(
        "--test_apk", dest="test_apk_path", type=str, default=None, help="Instrumentation APK."
    )
    parser.add_argument(
        "--test_package", type=str, default=None, help="Package of the instrumentation APK."
    )
    parser.add_argument(
        "--test_runner",
        type=str,
        default=None,
        help="Instrumentation runner class (default: androidx.test.runner.AndroidJUnitRunner).",
    )

    parser.add_argument("--system_image", type=str, default=None, help="avdmanager -k package.")
    parser.add_argument("--device_profile", type=str, default=None, help="avdmanager -d profile.")
    parser.add_argument("--adb_path", type=str, default=None)
    parser.add_argument("--emulator_path", type=str, default=None)
    parser.add_argument("--avdmanager_path", type=str, default=None)
    parser.add_argument(
        "--show_window",
        action="store_true",
        help="Run the emulator with a window (default: headless).",
    )

    parser.add_argument(
        "--output_dir",
        type=str,
        default=None,
        help="Directory for logs and reports (default: reports go to stdout).",
    )
    parser.add_argument("--plain_output", action="store_true", default=None)
    parser.add_argument("--junit_output", action="store_true", default=None)
    parser.add_argument("--json_output", action="store_true", default=None)
    parser.add_argument(
        "--stats_output",
        type=str,
        default=None,
        help="Where to write stats.json (default: <output_dir>/stats.json).",
    )

    parser.add_argument(
        "--failure_tolerance",
        type=int,
        default=None,
        help="Restarts (new device) allowed after a failure (default: 0).",
    )
    parser.add_argument(
        "--error_retries",
        dest="error_retries_count",
        type=int,
        default=None,
        help="Cap on total retries of any kind (default: 4).",
    )
    parser.add_argument(
        "--include",
        dest="tests_to_run",
        action="append",
        default=None,
        help="Class or Class#method to run; repeatable or comma separated.",
    )
    parser.add_argument(
        "--exclude",
        dest="tests_to_skip",
        action="append",
        default=None,
        help="Class or Class#method to skip; repeatable or comma separated.",
    )

    parser.add_argument("--create_timeout", dest="create_timeout_s", type=float, default=None)
    parser.add_argument("--launch_timeout", dest="launch_timeout_s", type=float, default=None)
    parser.add_argument("--delete_timeout", dest="delete_timeout_s", type=float, default=None)
    parser.add_argument("--boot_timeout", dest="boot_timeout_s", type=float, default=None)
    parser.add_argument(
        "--test_timeout",
        dest="test_timeout_s",
        type=float,
        default=None,
        help="Per-test wall clock limit in seconds (default: none).",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging.")
    return parser


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        key: getattr(args, key)
        for key in (
            "app_path",
            "test_apk_path",
            "test_package",
            "test_runner",
            "system_image",
            "device_profile",
            "adb_path",
            "emulator_path",
            "avdmanager_path",
            "output_dir",
            "plain_output",
            "junit_output",
            "json_output",
            "stats_output",
            "failure_tolerance",
            "error_retries_count",
            "create_timeout_s",
            "launch_timeout_s",
            "delete_timeout_s",
            "boot_timeout_s",
            "test_timeout_s",
        )
    }
    out["tests_to_run"] = _split_csv(args.tests_to_run)
    out["tests_to_skip"] = _split_csv(args.tests_to_skip)
    if args.show_window:
        out["headless"] = False
    return out


def _stats_path(cfg: RunConfig) -> Optional[Path]:
    if cfg.stats_output:
        return Path(cfg.stats_output)
    if cfg.output_dir:
        return Path(cfg.output_dir) / "stats.json"
    return None


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        cfg = load_run_config(args.config, overrides=_overrides(args))
    except FileNotFoundError as e:
        parser.error(f"config not found: {e}")
    except ConfigError as e:
        parser.error(f"invalid config:\n{e}")

    if not cfg.test_apk_path or not cfg.test_package:
        parser.error("--test_apk and --test_package are required (flags or --config)")
    if not cfg.system_image:
        parser.error("--system_image is required (flag or --config)")

    configure_logging(verbose=bool(args.verbose))

    token = CancellationToken()
    previous = install_interrupt_handler(token)
    stats = RunStats()
    orchestrator = Orchestrator(cfg, runner_factory=EmulatorRunner, stats=stats, cancel_token=token)
    try:
        status = orchestrator.run()
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)

    stats_path = _stats_path(cfg)
    if stats_path is not None:
        try:
            stats.write_json(stats_path)
        except OSError as e:
            logger.error("Could not write %s: %s", stats_path, e)

    print(f"[{'OK' if not status else 'FAILED'}] {describe_exit_status(status)} (pid {os.getpid()})")
    return int(status)


if __name__ == "__main__":
    raise SystemExit(main())
