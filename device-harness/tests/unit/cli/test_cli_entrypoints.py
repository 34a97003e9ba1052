from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from fakes import outcome

from device_harness.cli import run_pipeline, stop_device
from device_harness.pipeline.types import Report, StageName, StageStatus, TestResult


def _config(tmp_path: Path) -> Path:
    path = tmp_path / "pipeline.yaml"
    path.write_text(
        yaml.safe_dump({"app": {"package_name": "com.example.game", "artifact_path": "a.apk"}}),
        encoding="utf-8",
    )
    return path


class _FakePipeline:
    instances: list["_FakePipeline"] = []
    succeed = True

    def __init__(self, config) -> None:
        self.config = config
        self.continuous_args = None
        _FakePipeline.instances.append(self)

    def _report(self) -> Report:
        report = Report()
        report.add_result(TestResult(name="liveness", passed=True, score=100))
        if not _FakePipeline.succeed:
            report.record_stage(StageName.INSTALL, StageStatus.FAILED)
            report.add_error("install failed")
        return report

    def run_once(self) -> Report:
        return self._report()

    def run_continuously(self, interval_s, *, max_runs=None, stop_event=None, on_report=None):
        self.continuous_args = (interval_s, max_runs)
        reports = [self._report() for _ in range(max_runs or 1)]
        for r in reports:
            on_report(r)
        return reports

    def stop_device_if_running(self):
        return None


@pytest.fixture()
def fake_pipeline(monkeypatch):
    _FakePipeline.instances = []
    _FakePipeline.succeed = True
    monkeypatch.setattr(run_pipeline, "Pipeline", _FakePipeline)
    return _FakePipeline


def test_run_exit_code_follows_report(tmp_path, fake_pipeline, capsys) -> None:
    cfg = _config(tmp_path)

    assert run_pipeline.main(["--config", str(cfg)]) == 0
    assert "SUCCESS: 1 passed, 0 failed" in capsys.readouterr().out

    fake_pipeline.succeed = False
    assert run_pipeline.main(["--config", str(cfg)]) == 1
    assert "error: install failed" in capsys.readouterr().out


def test_run_applies_cli_overrides(tmp_path, fake_pipeline) -> None:
    cfg = _config(tmp_path)

    run_pipeline.main(
        ["--config", str(cfg), "--skip_build", "--skip_checks", "--report_dir", "/tmp/r"]
    )

    config = fake_pipeline.instances[-1].config
    assert config.skip_build is True
    assert config.skip_checks is True
    assert config.skip_install is False
    assert config.report_dir == "/tmp/r"


def test_run_reads_config_from_env(tmp_path, fake_pipeline, monkeypatch) -> None:
    monkeypatch.setenv("DH_CONFIG", str(_config(tmp_path)))
    assert run_pipeline.main([]) == 0


def test_run_config_errors_exit_2(tmp_path, fake_pipeline) -> None:
    bad = tmp_path / "bad.yaml"
    bad.write_text(yaml.safe_dump({"app": {"package_name": "x"}}), encoding="utf-8")

    assert run_pipeline.main(["--config", str(bad)]) == 2
    assert run_pipeline.main(["--config", str(tmp_path / "missing.yaml")]) == 2
    assert fake_pipeline.instances == []


def test_run_continuous(tmp_path, fake_pipeline, capsys) -> None:
    cfg = _config(tmp_path)

    rc = run_pipeline.main(
        ["--config", str(cfg), "--continuous", "--interval_s", "5", "--max_runs", "2"]
    )

    assert rc == 0
    assert fake_pipeline.instances[-1].continuous_args == (5.0, 2)
    assert capsys.readouterr().out.count("SUCCESS") == 2


def test_stop_device_kills_listed_emulator(tmp_path, monkeypatch, capsys) -> None:
    calls: list[list[str]] = []

    def fake_run(self, invocation, *, timeout_s=None):
        argv = invocation.argv()
        calls.append(argv)
        if argv[-1] == "devices":
            return outcome("List of devices attached\nemulator-5554\tdevice\n")
        return outcome("OK: killing emulator, bye bye\n")

    monkeypatch.setattr(stop_device.CommandRunner, "run", fake_run)

    rc = stop_device.main(["--config", str(_config(tmp_path)), "--adb_path", "/sdk/adb"])

    assert rc == 0
    assert calls[-1] == ["/sdk/adb", "-s", "emulator-5554", "emu", "kill"]
    assert "Stopped emulator-5554" in capsys.readouterr().out


def test_stop_device_is_noop_when_not_running(tmp_path, monkeypatch) -> None:
    calls: list[list[str]] = []

    def fake_run(self, invocation, *, timeout_s=None):
        calls.append(invocation.argv())
        return outcome("List of devices attached\n\n")

    monkeypatch.setattr(stop_device.CommandRunner, "run", fake_run)

    assert stop_device.main(["--config", str(_config(tmp_path))]) == 0
    assert len(calls) == 1
