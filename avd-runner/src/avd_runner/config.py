from __future__ import annotations

import copy
import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from jsonschema import Draft202012Validator


class ConfigError(RuntimeError):
    pass


_NUMBER = {"type": "number", "minimum": 0}
_COUNT = {"type": "integer", "minimum": 0}
_PATH = {"type": ["string", "null"]}
_STR_LIST = {"type": "array", "items": {"type": "string", "minLength": 1}}

RUN_CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "app_path": _PATH,
        "test_apk_path": _PATH,
        "test_package": _PATH,
        "test_runner": {"type": "string", "minLength": 1},
        "system_image": _PATH,
        "device_profile": _PATH,
        "adb_path": {"type": "string", "minLength": 1},
        "emulator_path": {"type": "string", "minLength": 1},
        "avdmanager_path": {"type": "string", "minLength": 1},
        "headless": {"type": "boolean"},
        "emulator_args": _STR_LIST,
        "output_dir": _PATH,
        "plain_output": {"type": "boolean"},
        "junit_output": {"type": "boolean"},
        "json_output": {"type": "boolean"},
        "failure_tolerance": _COUNT,
        "error_retries_count": _COUNT,
        "tests_to_run": _STR_LIST,
        "tests_to_skip": _STR_LIST,
        "create_timeout_s": _NUMBER,
        "launch_timeout_s": _NUMBER,
        "delete_timeout_s": _NUMBER,
        "boot_timeout_s": _NUMBER,
        "test_timeout_s": {"type": ["number", "null"], "minimum": 0},
        "poll_interval_s": _NUMBER,
        "poll_backoff": {"type": "number", "minimum": 1},
        "poll_max_interval_s": _NUMBER,
        "tick_interval_s": {"type": "number", "exclusiveMinimum": 0},
        "stats_output": _PATH,
    },
}


@dataclass
class RunConfig:
    """Snapshot of everything one run needs.

    Contexts own a deep copy (:meth:`copy`); ``tests_to_skip`` grows while a
    lineage continues in place and is dropped again by a restart.
    """

    app_path: Optional[str] = None
    test_apk_path: Optional[str] = None
    test_package: Optional[str] = None
    test_runner: str = "androidx.test.runner.AndroidJUnitRunner"

    system_image: Optional[str] = None
    device_profile: Optional[str] = None
    adb_path: str = "adb"
    emulator_path: str = "emulator"
    avdmanager_path: str = "avdmanager"
    headless: bool = True
    emulator_args: List[str] = field(default_factory=list)

    output_dir: Optional[str] = None
    plain_output: bool = False
    junit_output: bool = False
    json_output: bool = False

    failure_tolerance: int = 0
    error_retries_count: int = 4
    tests_to_run: List[str] = field(default_factory=list)
    tests_to_skip: List[str] = field(default_factory=list)

    create_timeout_s: float = 60.0
    launch_timeout_s: float = 300.0
    delete_timeout_s: float = 60.0
    boot_timeout_s: float = 50.0
    test_timeout_s: Optional[float] = None

    poll_interval_s: float = 0.01
    poll_backoff: float = 1.0
    poll_max_interval_s: float = 1.0
    tick_interval_s: float = 0.01

    stats_output: Optional[str] = None

    def copy(self) -> "RunConfig":
        return copy.deepcopy(self)

    @property
    def bundle_name(self) -> str:
        if not self.test_apk_path:
            return "tests"
        return Path(self.test_apk_path).stem

    @property
    def instrumentation_target(self) -> str:
        if not self.test_package:
            raise ConfigError("test_package is required to run instrumentation")
        return f"{self.test_package}/{self.test_runner}"

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: copy.deepcopy(getattr(self, f.name)) for f in fields(self)}


def validate_against_schema(
    instance: Mapping[str, Any],
    schema: Dict[str, Any],
    *,
    where: str,
) -> None:
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(dict(instance)), key=lambda e: list(e.path))
    if errors:
        msgs = []
        for e in errors[:20]:
            loc = "/".join([str(p) for p in e.path])
            msgs.append(f"- {where}:{loc}: {e.message}")
        if len(errors) > 20:
            msgs.append(f"... ({len(errors)-20} more)")
        raise ConfigError("\n".join(msgs))


def load_yaml_or_json(path: Path) -> Dict[str, Any]:
    """Load a YAML/JSON file into a dict; the top level must be an object."""
    if not path.exists():
        raise FileNotFoundError(path)

    if path.suffix.lower() in {".yaml", ".yml"}:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    elif path.suffix.lower() == ".json":
        data = json.loads(path.read_text(encoding="utf-8"))
    else:
        raise ConfigError(f"Unsupported config file extension: {path}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level config must be an object: {path}")
    return data


def _env_defaults() -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, env in (
        ("adb_path", "AVD_RUNNER_ADB_PATH"),
        ("emulator_path", "AVD_RUNNER_EMULATOR_PATH"),
        ("avdmanager_path", "AVD_RUNNER_AVDMANAGER_PATH"),
    ):
        raw = os.environ.get(env)
        if raw and raw.strip():
            out[key] = raw.strip()
    return out


def config_from_mapping(
    data: Mapping[str, Any],
    *,
    overrides: Optional[Mapping[str, Any]] = None,
    where: str = "config",
) -> RunConfig:
    merged: Dict[str, Any] = _env_defaults()
    merged.update(dict(data))
    for key, value in (overrides or {}).items():
        if value is not None:
            merged[key] = value
    validate_against_schema(merged, RUN_CONFIG_SCHEMA, where=where)
    cfg = RunConfig(**copy.deepcopy(merged))
    if cfg.poll_max_interval_s < cfg.poll_interval_s:
        raise ConfigError(
            f"- {where}:poll_max_interval_s: must be >= poll_interval_s "
            f"({cfg.poll_max_interval_s} < {cfg.poll_interval_s})"
        )
    return cfg


def load_run_config(
    path: Optional[Path],
    *,
    overrides: Optional[Mapping[str, Any]] = None,
) -> RunConfig:
    data = load_yaml_or_json(path) if path is not None else {}
    return config_from_mapping(data, overrides=overrides, where=str(path or "config"))
