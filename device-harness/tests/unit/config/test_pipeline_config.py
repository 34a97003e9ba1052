from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from device_harness.config import (
    DEFAULT_CHECKS,
    CheckConfig,
    PipelineConfig,
    config_from_mapping,
    load_pipeline_config,
    validate_config_mapping,
)
from device_harness.errors import ConfigError


def _write_yaml(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    return path


def test_minimal_config_uses_defaults(tmp_path) -> None:
    cfg_path = _write_yaml(
        tmp_path / "pipeline.yaml",
        {"app": {"package_name": "com.example.game", "artifact_path": "build/game.apk"}},
    )

    cfg = load_pipeline_config(cfg_path)

    assert cfg.package_name == "com.example.game"
    assert cfg.artifact_path == str(tmp_path.resolve() / "build" / "game.apk")
    assert cfg.activity_name == "com.unity3d.player.UnityPlayerActivity"
    assert cfg.avd_name == "Pixel_7_API_33"
    assert cfg.serial == "emulator-5554"
    assert cfg.boot_timeout_s == 120.0
    assert cfg.boot_poll_interval_s == 2.0
    assert cfg.settle_after_start_s == 5.0
    assert cfg.checks == CheckConfig()
    assert cfg.checks.enabled == DEFAULT_CHECKS
    assert cfg.build_command is None


def test_full_config_round_trips_into_fields(tmp_path) -> None:
    data = {
        "device": {"avd_name": "Pixel_6_API_34", "port": 5560, "headless": False},
        "tools": {"sdk_root": "/opt/android-sdk"},
        "app": {
            "package_name": "com.example.game",
            "activity_name": ".MainActivity",
            "artifact_path": "/abs/game.apk",
        },
        "build": {"command": ["./gradlew", "assembleRelease"], "cwd": "android"},
        "flow": {"skip_install": True},
        "timing": {"boot_timeout_s": 300, "stage_timeouts_s": {"run_checks": 120}},
        "checks": {"enabled": ["liveness", "screenshot"], "min_fps": 25},
        "output": {"report_dir": "out/reports"},
    }
    cfg_path = tmp_path / "pipeline.json"
    cfg_path.write_text(json.dumps(data), encoding="utf-8")

    cfg = load_pipeline_config(cfg_path)

    assert cfg.serial == "emulator-5560"
    assert cfg.headless is False
    assert cfg.sdk_root == "/opt/android-sdk"
    assert cfg.artifact_path == "/abs/game.apk"
    assert cfg.build_command == ("./gradlew", "assembleRelease")
    assert cfg.build_cwd == str(tmp_path.resolve() / "android")
    assert cfg.skip_install is True
    assert cfg.boot_timeout_s == 300.0
    assert cfg.stage_timeout("run_checks") == 120.0
    assert cfg.checks.enabled == ("liveness", "screenshot")
    assert cfg.checks.min_fps == 25
    assert cfg.report_dir == str(tmp_path.resolve() / "out" / "reports")


def test_schema_errors_are_reported_with_location(tmp_path) -> None:
    cfg_path = _write_yaml(
        tmp_path / "bad.yaml",
        {
            "app": {"package_name": "not a package", "artifact_path": "a.apk"},
            "device": {"port": 80},
            "checks": {"enabled": ["liveness", "battery"]},
        },
    )

    with pytest.raises(ConfigError) as ei:
        load_pipeline_config(cfg_path)

    msg = str(ei.value)
    assert "app/package_name" in msg
    assert "device/port" in msg
    assert "checks/enabled/1" in msg


def test_unknown_keys_are_rejected() -> None:
    with pytest.raises(ConfigError, match="skip_everything"):
        validate_config_mapping(
            {
                "app": {"package_name": "com.example.game", "artifact_path": "a.apk"},
                "flow": {"skip_everything": True},
            }
        )


def test_missing_and_malformed_files(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_pipeline_config(tmp_path / "nope.yaml")

    bad = tmp_path / "bad.yaml"
    bad.write_text("app: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Could not parse"):
        load_pipeline_config(bad)

    listy = tmp_path / "list.yaml"
    listy.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Top-level config must be an object"):
        load_pipeline_config(listy)

    toml = tmp_path / "cfg.toml"
    toml.write_text("x = 1\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Unsupported"):
        load_pipeline_config(toml)


def test_overrides(tmp_path) -> None:
    cfg_path = _write_yaml(
        tmp_path / "pipeline.yaml",
        {"app": {"package_name": "com.example.game", "artifact_path": "a.apk"}},
    )

    cfg = load_pipeline_config(cfg_path, overrides={"skip_build": True, "report_dir": "/r"})
    assert cfg.skip_build is True
    assert cfg.report_dir == "/r"

    with pytest.raises(ConfigError, match="unknown config override"):
        cfg.with_overrides(skip_everything=True)


def test_stage_timeouts_default_and_wait_ready_follows_boot_timeout() -> None:
    cfg = PipelineConfig(package_name="com.example.game", artifact_path="a.apk")
    assert cfg.stage_timeout("build") == 1800.0
    assert cfg.stage_timeout("wait_ready") == 150.0
    assert cfg.stage_timeout("generate_report") is None

    cfg = cfg.with_overrides(boot_timeout_s=600.0, stage_timeouts_s={"install": None})
    assert cfg.stage_timeout("wait_ready") == 630.0
    assert cfg.stage_timeout("install") is None


def test_tool_paths_resolve_from_env_then_sdk_root(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("DH_ADB_PATH", raising=False)
    monkeypatch.delenv("DH_EMULATOR_PATH", raising=False)
    monkeypatch.delenv("ANDROID_SDK_ROOT", raising=False)
    monkeypatch.delenv("ANDROID_HOME", raising=False)

    cfg = PipelineConfig(package_name="com.example.game", artifact_path="a.apk")
    assert cfg.resolve_adb_path() == "adb"
    assert cfg.resolve_emulator_path() == "emulator"

    sdk = tmp_path / "sdk"
    (sdk / "platform-tools").mkdir(parents=True)
    (sdk / "platform-tools" / "adb").write_text("", encoding="utf-8")
    (sdk / "emulator").mkdir()
    (sdk / "emulator" / "emulator.exe").write_text("", encoding="utf-8")
    monkeypatch.setenv("ANDROID_HOME", str(sdk))

    assert cfg.resolve_adb_path() == str(sdk / "platform-tools" / "adb")
    assert cfg.resolve_emulator_path() == str(sdk / "emulator" / "emulator.exe")

    monkeypatch.setenv("DH_ADB_PATH", "/custom/adb")
    assert cfg.resolve_adb_path() == "/custom/adb"
    assert cfg.with_overrides(adb_path="/explicit/adb").resolve_adb_path() == "/explicit/adb"


def test_config_from_mapping_without_base_dir_keeps_paths() -> None:
    cfg = config_from_mapping(
        {"app": {"package_name": "com.example.game", "artifact_path": "rel/a.apk"}}
    )
    assert cfg.artifact_path == "rel/a.apk"
