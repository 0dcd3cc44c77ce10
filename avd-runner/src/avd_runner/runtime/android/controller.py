"""Android SDK tool wrappers.

Thin, auditable wrappers around the three command line tools a test run
needs:

  * ``avdmanager``: create/delete the throwaway AVD
  * ``emulator``: boot it
  * ``adb``: talk to the booted device (install, instrument, kill)

Notes
-----
* Every call records its argv so failures can be reported verbatim.
* All operations are intended for *emulator* use only.
"""

from __future__ import annotations

import re
import subprocess
import time
from dataclasses import dataclass
from typing import IO, Callable, Dict, List, Optional, Sequence

EMULATOR_PORT_RANGE = range(5554, 5684, 2)

_SERIAL_RE = re.compile(r"^emulator-(\d+)\s+(\S+)", re.MULTILINE)


class AndroidControllerError(RuntimeError):
    """Raised when an adb/emulator/avdmanager operation fails."""


@dataclass(frozen=True)
class AdbResult:
    args: list[str]
    stdout: str
    stderr: str
    returncode: int

    def ok(self) -> bool:
        return self.returncode == 0


def _run(
    cmd: list[str],
    *,
    timeout_s: float,
    check: bool,
    input_text: Optional[str] = None,
) -> AdbResult:
    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout_s,
            input=input_text,
        )
    except FileNotFoundError as e:
        raise AndroidControllerError(f"tool not found: {cmd[0]}") from e
    except subprocess.TimeoutExpired as e:
        raise AndroidControllerError(f"command timed out after {timeout_s}s: {' '.join(cmd)}") from e
    result = AdbResult(
        args=cmd,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
        returncode=proc.returncode,
    )
    if check and not result.ok():
        raise AndroidControllerError(
            f"command failed (rc={result.returncode}): {' '.join(cmd)}\n"
            f"stdout: {result.stdout}\n"
            f"stderr: {result.stderr}"
        )
    return result


def parse_emulator_serials(devices_output: str) -> Dict[str, str]:
    """Map ``emulator-<port>`` serials from ``adb devices`` to their state."""

    return {f"emulator-{m.group(1)}": m.group(2) for m in _SERIAL_RE.finditer(devices_output)}


def pick_free_console_port(used_serials: Sequence[str]) -> int:
    used = set(used_serials)
    for port in EMULATOR_PORT_RANGE:
        if f"emulator-{port}" not in used:
            return port
    raise AndroidControllerError("no free emulator console port in 5554-5682")


class AndroidController:
    """Thin wrapper around adb for one device serial."""

    def __init__(
        self,
        *,
        adb_path: str = "adb",
        serial: Optional[str] = None,
        timeout_s: float = 30.0,
    ) -> None:
        self._adb_path = adb_path
        self._serial = serial
        self._timeout_s = timeout_s

    @property
    def serial(self) -> Optional[str]:
        return self._serial

    def _base_cmd(self) -> list[str]:
        cmd = [self._adb_path]
        if self._serial:
            cmd += ["-s", self._serial]
        return cmd

    def adb(self, *args: str, timeout_s: float | None = None, check: bool = True) -> AdbResult:
        """Run an adb command and return stdout/stderr/returncode."""

        return _run(
            self._base_cmd() + list(args),
            timeout_s=self._timeout_s if timeout_s is None else float(timeout_s),
            check=check,
        )

    def adb_shell(
        self,
        command: str,
        *,
        timeout_s: float | None = None,
        check: bool = True,
    ) -> AdbResult:
        return self.adb("shell", command, timeout_s=timeout_s, check=check)

    def list_emulator_serials(self) -> Dict[str, str]:
        res = _run([self._adb_path, "devices"], timeout_s=self._timeout_s, check=False)
        return parse_emulator_serials(res.stdout)

    def get_state(self) -> str:
        res = self.adb("get-state", check=False)
        return res.stdout.strip() if res.ok() else "offline"

    def getprop(self, name: str) -> str:
        res = self.adb_shell(f"getprop {name}", check=False)
        return res.stdout.strip() if res.ok() else ""

    def wait_for_boot(
        self,
        *,
        timeout_s: float,
        poll_s: float = 1.0,
        is_cancelled: Callable[[], bool] = lambda: False,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Block until ``sys.boot_completed`` is 1 (call from a worker thread)."""

        deadline = clock() + float(timeout_s)
        while clock() < deadline:
            if is_cancelled():
                raise AndroidControllerError(f"boot wait cancelled: {self._serial}")
            try:
                if self.get_state() == "device" and self.getprop("sys.boot_completed") == "1":
                    return
            except AndroidControllerError:
                # adb may briefly time out while the device comes up.
                pass
            sleep(poll_s)
        raise AndroidControllerError(f"device did not boot within {timeout_s}s: {self._serial}")

    def install(self, apk_path: str, *, timeout_s: float | None = None) -> AdbResult:
        res = self.adb("install", "-r", "-t", apk_path, timeout_s=timeout_s, check=False)
        # Older adb versions exit 0 and print "Failure [...]".
        if not res.ok() or "Failure" in res.stdout:
            raise AndroidControllerError(
                f"install failed (rc={res.returncode}): {apk_path}\n"
                f"{(res.stdout + res.stderr).strip()}"
            )
        return res

    def instrument_cmd(
        self,
        target: str,
        *,
        include: Sequence[str] = (),
        exclude: Sequence[str] = (),
    ) -> list[str]:
        cmd = self._base_cmd() + ["shell", "am", "instrument", "-r", "-w"]
        if include:
            cmd += ["-e", "class", ",".join(include)]
        if exclude:
            cmd += ["-e", "notClass", ",".join(exclude)]
        cmd.append(target)
        return cmd

    def start_instrumentation(
        self,
        target: str,
        *,
        include: Sequence[str] = (),
        exclude: Sequence[str] = (),
    ) -> "subprocess.Popen[str]":
        cmd = self.instrument_cmd(target, include=include, exclude=exclude)
        try:
            return subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            raise AndroidControllerError(f"could not start instrumentation: {' '.join(cmd)}") from e

    def emu_kill(self) -> AdbResult:
        return self.adb("emu", "kill", check=False)


class AvdManager:
    def __init__(self, *, avdmanager_path: str = "avdmanager", timeout_s: float = 120.0) -> None:
        self._path = avdmanager_path
        self._timeout_s = timeout_s

    def create_avd(
        self,
        name: str,
        *,
        system_image: str,
        device_profile: Optional[str],
        timeout_s: Optional[float] = None,
    ) -> AdbResult:
        cmd = [self._path, "create", "avd", "-n", name, "-k", system_image, "--force"]
        if device_profile:
            cmd += ["-d", device_profile]
        # avdmanager asks whether to create a custom hardware profile.
        return _run(
            cmd,
            timeout_s=self._timeout_s if timeout_s is None else min(self._timeout_s, float(timeout_s)),
            check=True,
            input_text="no\n",
        )

    def delete_avd(self, name: str) -> AdbResult:
        return _run(
            [self._path, "delete", "avd", "-n", name], timeout_s=self._timeout_s, check=True
        )


def emulator_cmd(
    emulator_path: str,
    name: str,
    *,
    port: int,
    headless: bool = True,
    extra_args: Sequence[str] = (),
) -> List[str]:
    cmd = [emulator_path, "-avd", name, "-port", str(port), "-no-snapshot", "-no-boot-anim"]
    if headless:
        cmd += ["-no-window", "-no-audio"]
    cmd += list(extra_args)
    return cmd


def start_emulator(cmd: Sequence[str], *, log: Optional[IO[str]] = None) -> "subprocess.Popen[str]":
    try:
        return subprocess.Popen(
            list(cmd),
            stdout=log if log is not None else subprocess.DEVNULL,
            stderr=subprocess.STDOUT,
            text=True,
        )
    except OSError as e:
        raise AndroidControllerError(f"could not start emulator: {' '.join(cmd)}") from e
