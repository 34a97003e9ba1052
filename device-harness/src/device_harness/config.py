"""Pipeline configuration.

One frozen ``PipelineConfig`` describes a whole run: which emulator to boot,
which app to build/install/launch, which stages to skip, every timeout and
settle delay, and the check thresholds. Config files are YAML or JSON with
one section per concern (``device``, ``tools``, ``app``, ``build``, ``flow``,
``timing``, ``checks``, ``output``); they are validated against
``schemas/pipeline_config.schema.json`` before anything is built from them.
"""

from __future__ import annotations

import dataclasses
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from jsonschema import Draft202012Validator

from device_harness.errors import ConfigError

SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "pipeline_config.schema.json"

CHECK_LIVENESS = "liveness"
CHECK_INPUT_SIMULATION = "input_simulation"
CHECK_PERFORMANCE = "performance"
CHECK_MEMORY = "memory"
CHECK_STABILITY = "stability"
CHECK_SCREENSHOT = "screenshot"

DEFAULT_CHECKS = (
    CHECK_LIVENESS,
    CHECK_INPUT_SIMULATION,
    CHECK_PERFORMANCE,
    CHECK_MEMORY,
    CHECK_STABILITY,
)
ALL_CHECKS = DEFAULT_CHECKS + (CHECK_SCREENSHOT,)

DEFAULT_ACTIVITY = "com.unity3d.player.UnityPlayerActivity"

DEFAULT_STAGE_TIMEOUTS_S: Dict[str, Optional[float]] = {
    "build": 1800.0,
    "start_device": 60.0,
    # None -> derived from boot_timeout_s (see PipelineConfig.stage_timeout).
    "wait_ready": None,
    "install": 300.0,
    "launch": 60.0,
    "run_checks": 600.0,
}


@dataclass(frozen=True)
class CheckConfig:
    enabled: tuple[str, ...] = DEFAULT_CHECKS
    tap_x: int = 500
    tap_y: int = 500
    perf_window_s: float = 3.0
    min_fps: float = 30.0
    target_fps: float = 60.0
    memory_ceiling_mb: float = 200.0
    stability_window_s: float = 10.0
    stability_interval_s: float = 2.0


@dataclass(frozen=True)
class PipelineConfig:
    package_name: str
    artifact_path: str
    activity_name: str = DEFAULT_ACTIVITY

    avd_name: str = "Pixel_7_API_33"
    port: int = 5554
    headless: bool = True
    emulator_args: tuple[str, ...] = ()
    stop_adopted: bool = False

    sdk_root: Optional[str] = None
    adb_path: Optional[str] = None
    emulator_path: Optional[str] = None

    build_command: Optional[tuple[str, ...]] = None
    build_cwd: Optional[str] = None

    skip_build: bool = False
    skip_start_device: bool = False
    skip_install: bool = False
    skip_launch: bool = False
    skip_checks: bool = False

    boot_timeout_s: float = 120.0
    boot_poll_interval_s: float = 2.0
    wait_boot_completed: bool = True
    command_timeout_s: float = 60.0
    stop_grace_s: float = 10.0
    settle_after_start_s: float = 5.0
    settle_after_install_s: float = 2.0
    settle_after_launch_s: float = 3.0
    settle_between_checks_s: float = 1.0
    stage_timeouts_s: Mapping[str, Optional[float]] = field(default_factory=dict)

    checks: CheckConfig = field(default_factory=CheckConfig)

    report_dir: str = "reports"
    screenshot_dir: str = "screenshots"

    @property
    def serial(self) -> str:
        return f"emulator-{int(self.port)}"

    def stage_timeout(self, stage: str) -> Optional[float]:
        if stage in self.stage_timeouts_s:
            value = self.stage_timeouts_s[stage]
        else:
            value = DEFAULT_STAGE_TIMEOUTS_S.get(stage)
        if value is None and stage == "wait_ready":
            # The boot poll has its own deadline; leave it room to report a clean timeout.
            return float(self.boot_timeout_s) + 30.0
        return None if value is None else float(value)

    def resolved_sdk_root(self) -> Optional[str]:
        return (
            self.sdk_root
            or os.environ.get("ANDROID_SDK_ROOT")
            or os.environ.get("ANDROID_HOME")
            or None
        )

    def resolve_adb_path(self) -> str:
        return (
            self.adb_path
            or os.environ.get("DH_ADB_PATH")
            or _sdk_tool(self.resolved_sdk_root(), "platform-tools", "adb")
            or "adb"
        )

    def resolve_emulator_path(self) -> str:
        return (
            self.emulator_path
            or os.environ.get("DH_EMULATOR_PATH")
            or _sdk_tool(self.resolved_sdk_root(), "emulator", "emulator")
            or "emulator"
        )

    def with_overrides(self, **overrides: Any) -> "PipelineConfig":
        unknown = sorted(k for k in overrides if k not in _FIELD_NAMES)
        if unknown:
            raise ConfigError(f"unknown config override(s): {', '.join(unknown)}")
        return dataclasses.replace(self, **overrides)


_FIELD_NAMES = frozenset(f.name for f in dataclasses.fields(PipelineConfig))


def _sdk_tool(sdk_root: Optional[str], *parts: str) -> Optional[str]:
    if not sdk_root:
        return None
    base = Path(sdk_root).joinpath(*parts)
    for candidate in (base, base.with_name(base.name + ".exe")):
        if candidate.is_file():
            return str(candidate)
    return None


# ------------------------------- Loading -------------------------------------


def load_yaml_or_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)

    suffix = path.suffix.lower()
    try:
        if suffix in {".yaml", ".yml"}:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        elif suffix == ".json":
            data = json.loads(path.read_text(encoding="utf-8"))
        else:
            raise ConfigError(f"Unsupported config file extension: {path}")
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not parse {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Top-level config must be an object: {path}")
    return data


def load_schema(schema_path: Path = SCHEMA_PATH) -> Dict[str, Any]:
    schema = json.loads(schema_path.read_text(encoding="utf-8"))
    if not isinstance(schema, dict):
        raise ConfigError(f"Schema must be an object: {schema_path}")
    return schema


def validate_config_mapping(data: Mapping[str, Any], *, where: str = "config") -> None:
    validator = Draft202012Validator(load_schema())
    errors = sorted(validator.iter_errors(dict(data)), key=lambda e: [str(p) for p in e.path])
    if errors:
        msgs = []
        for e in errors[:20]:
            loc = "/".join([str(p) for p in e.path])
            msgs.append(f"- {where}:{loc}: {e.message}")
        if len(errors) > 20:
            msgs.append(f"... ({len(errors)-20} more)")
        raise ConfigError("\n".join(msgs))


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = data.get(name)
    return value if isinstance(value, Mapping) else {}


def config_from_mapping(
    data: Mapping[str, Any], *, base_dir: Optional[Path] = None
) -> PipelineConfig:
    """Build a PipelineConfig from an already-validated mapping.

    Relative paths (artifact, build cwd, output dirs) are resolved against
    ``base_dir`` when given, i.e. against the config file's directory.
    """

    device = _section(data, "device")
    tools = _section(data, "tools")
    app = _section(data, "app")
    build = _section(data, "build")
    flow = _section(data, "flow")
    timing = _section(data, "timing")
    checks = _section(data, "checks")
    output = _section(data, "output")

    def rel(value: Optional[str]) -> Optional[str]:
        if value is None or base_dir is None:
            return value
        p = Path(value).expanduser()
        return str(p if p.is_absolute() else (base_dir / p))

    kwargs: Dict[str, Any] = {
        "package_name": str(app["package_name"]),
        "artifact_path": rel(str(app["artifact_path"])),
    }
    if "activity_name" in app:
        kwargs["activity_name"] = str(app["activity_name"])

    for key in ("avd_name", "port", "headless", "stop_adopted"):
        if key in device:
            kwargs[key] = device[key]
    if "emulator_args" in device:
        kwargs["emulator_args"] = tuple(str(a) for a in device["emulator_args"])

    for key in ("sdk_root", "adb_path", "emulator_path"):
        if tools.get(key):
            kwargs[key] = str(tools[key])

    if build.get("command"):
        kwargs["build_command"] = tuple(str(a) for a in build["command"])
    if build.get("cwd"):
        kwargs["build_cwd"] = rel(str(build["cwd"]))

    for key in ("skip_build", "skip_start_device", "skip_install", "skip_launch", "skip_checks"):
        if key in flow:
            kwargs[key] = bool(flow[key])

    for key in (
        "boot_timeout_s",
        "boot_poll_interval_s",
        "command_timeout_s",
        "stop_grace_s",
        "settle_after_start_s",
        "settle_after_install_s",
        "settle_after_launch_s",
        "settle_between_checks_s",
    ):
        if key in timing:
            kwargs[key] = float(timing[key])
    if "wait_boot_completed" in timing:
        kwargs["wait_boot_completed"] = bool(timing["wait_boot_completed"])
    if "stage_timeouts_s" in timing:
        kwargs["stage_timeouts_s"] = {
            str(k): (None if v is None else float(v)) for k, v in timing["stage_timeouts_s"].items()
        }

    check_kwargs: Dict[str, Any] = {}
    for f in dataclasses.fields(CheckConfig):
        if f.name in checks:
            value = checks[f.name]
            check_kwargs[f.name] = tuple(value) if f.name == "enabled" else value
    kwargs["checks"] = CheckConfig(**check_kwargs)

    for key in ("report_dir", "screenshot_dir"):
        if key in output:
            kwargs[key] = rel(str(output[key]))

    return PipelineConfig(**kwargs)


def load_pipeline_config(
    path: Path,
    *,
    overrides: Optional[Mapping[str, Any]] = None,
) -> PipelineConfig:
    """Load, validate and build a PipelineConfig from a YAML/JSON file."""

    path = Path(path)
    data = load_yaml_or_json(path)
    validate_config_mapping(data, where=str(path))
    config = config_from_mapping(data, base_dir=path.resolve().parent)
    if overrides:
        config = config.with_overrides(**dict(overrides))
    return config
