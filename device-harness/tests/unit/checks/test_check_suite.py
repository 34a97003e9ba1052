from __future__ import annotations

import pytest
from fakes import FakeApp, FakeBridge, FakeClock, outcome

from device_harness.checks.suite import (
    INPUT_SIMULATION_NOTE,
    CheckSuite,
    _parse_total_frames,
    _parse_total_pss_kb,
    _process_listed,
)
from device_harness.config import ALL_CHECKS, CheckConfig

SERIAL = "emulator-5554"
PKG = "com.example.game"


def _suite(tmp_path, *, checks=None, settle_between_s=0.0, **app_kwargs):
    clock = FakeClock(start=100.0)
    bridge = FakeBridge(clock=clock)
    app = FakeApp(PKG, clock=clock, **app_kwargs).attach(bridge)
    cfg = CheckConfig(**({"enabled": tuple(checks)} if checks is not None else {}))
    suite = CheckSuite(
        bridge=bridge,
        config=cfg,
        package_name=PKG,
        screenshot_dir=tmp_path / "shots",
        settle_between_s=settle_between_s,
        clock=clock,
        sleep=clock.sleep,
    )
    return suite, bridge, app, clock


def test_parsers() -> None:
    assert _parse_total_frames("Stats since: 1ns\nTotal frames rendered: 5120\n") == 5120
    assert _parse_total_frames("No process found for: com.example.game") is None
    assert _parse_total_pss_kb("   TOTAL PSS:    81234   TOTAL RSS: 120000") == 81234
    old_layout = (
        "                   Pss  Private  Private  SwapPss     Heap\n"
        "                 Total    Dirty    Clean    Dirty     Size\n"
        "        TOTAL    51200    40000     2000        0    30000\n"
    )
    assert _parse_total_pss_kb(old_layout) == 51200
    assert _parse_total_pss_kb("") is None
    assert _process_listed("u0_a1 4321 1 0 0 S com.example.game\n", PKG)
    assert not _process_listed("u0_a1 4400 1 0 0 S com.example.game:remote\n", PKG)


def test_default_suite_runs_five_checks_in_order(tmp_path) -> None:
    suite, bridge, _, _ = _suite(tmp_path)

    results = suite.run(SERIAL)

    assert [r.name for r in results] == [
        "liveness",
        "input_simulation",
        "performance",
        "memory",
        "stability",
    ]
    assert all(r.passed for r in results)


def test_liveness_matches_exact_process_name(tmp_path) -> None:
    suite, _, app, _ = _suite(tmp_path, checks=["liveness"])
    assert suite.run(SERIAL)[0].passed

    app.running = False
    res = suite.run(SERIAL)[0]
    # Only `com.example.game:remote` is left, which is not the app process.
    assert not res.passed
    assert res.score == 0.0


def test_liveness_falls_back_to_plain_ps(tmp_path) -> None:
    suite, bridge, app, _ = _suite(tmp_path, checks=["liveness"])
    app.supports_ps_all = False

    assert suite.run(SERIAL)[0].passed
    assert bridge.shell_commands() == ["ps -A", "ps"]


def test_input_simulation_passes_when_tap_accepted(tmp_path) -> None:
    suite, bridge, app, _ = _suite(tmp_path, checks=["input_simulation"])

    res = suite.run(SERIAL)[0]
    assert res.passed
    assert INPUT_SIMULATION_NOTE in res.detail
    assert bridge.shell_commands() == ["input tap 500 500"]

    app.tap_rc = 1
    assert not suite.run(SERIAL)[0].passed


def test_performance_measures_frames_over_window(tmp_path) -> None:
    suite, _, _, clock = _suite(tmp_path, checks=["performance"], fps=48.0)
    start = clock()

    res = suite.run(SERIAL)[0]

    assert res.passed
    assert res.score == pytest.approx(80.0)
    assert "48.0 fps" in res.detail
    assert clock() - start == pytest.approx(3.0)


def test_performance_below_minimum_fails(tmp_path) -> None:
    suite, *_ = _suite(tmp_path, checks=["performance"], fps=20.0)
    res = suite.run(SERIAL)[0]
    assert not res.passed
    assert res.score == pytest.approx(20.0 / 60.0 * 100.0)


def test_performance_score_is_clamped(tmp_path) -> None:
    suite, *_ = _suite(tmp_path, checks=["performance"], fps=120.0)
    res = suite.run(SERIAL)[0]
    assert res.passed
    assert res.score == 100.0


def test_performance_without_counter_fails(tmp_path) -> None:
    suite, bridge, _, _ = _suite(tmp_path, checks=["performance"])
    bridge.shell_handlers["dumpsys gfxinfo"] = lambda cmd: outcome("No process found\n")

    res = suite.run(SERIAL)[0]
    assert not res.passed
    assert res.detail == "frame counter unavailable"


def test_memory_score_drops_towards_ceiling(tmp_path) -> None:
    suite, *_ = _suite(tmp_path, checks=["memory"], pss_kb=20 * 1024)
    res = suite.run(SERIAL)[0]
    assert res.passed
    assert res.score == pytest.approx(90.0)

    suite, *_ = _suite(tmp_path, checks=["memory"], pss_kb=250 * 1024)
    res = suite.run(SERIAL)[0]
    assert not res.passed
    assert res.score == 0.0
    assert "250.0 MB" in res.detail


def test_stability_passes_after_full_window(tmp_path) -> None:
    suite, bridge, _, clock = _suite(tmp_path, checks=["stability"])
    start = clock()

    res = suite.run(SERIAL)[0]

    assert res.passed
    assert clock() - start == pytest.approx(10.0)
    assert bridge.shell_commands().count("ps -A") == 6


def test_stability_short_circuits_on_first_miss(tmp_path) -> None:
    suite, bridge, app, clock = _suite(tmp_path, checks=["stability"])
    app.dies_at = clock() + 4.0
    start = clock()

    res = suite.run(SERIAL)[0]

    assert not res.passed
    assert res.score == 0.0
    assert clock() - start == pytest.approx(4.0)
    assert bridge.shell_commands().count("ps -A") == 3
    assert "after 4.0s of 10s" in res.detail


def test_failing_check_does_not_stop_the_others(tmp_path) -> None:
    suite, bridge, _, _ = _suite(tmp_path)

    def boom(cmd):
        raise RuntimeError("adb connection reset")

    bridge.shell_handlers["input tap"] = boom

    results = suite.run(SERIAL)

    assert len(results) == 5
    tap = results[1]
    assert not tap.passed
    assert tap.score == 0.0
    assert tap.detail == "RuntimeError: adb connection reset"
    assert [r.passed for r in results] == [True, False, True, True, True]


def test_results_stream_to_sink_and_settle_between_checks(tmp_path) -> None:
    suite, _, _, clock = _suite(
        tmp_path, checks=["liveness", "input_simulation", "memory"], settle_between_s=1.0
    )
    seen = []

    suite.run(SERIAL, sink=seen.append)

    assert [r.name for r in seen] == ["liveness", "input_simulation", "memory"]
    assert clock.sleeps == [1.0, 1.0]


def test_screenshot_is_pulled_and_remote_file_removed(tmp_path) -> None:
    suite, bridge, _, _ = _suite(tmp_path, checks=["screenshot"])

    res = suite.run(SERIAL)[0]

    assert res.passed
    assert res.detail.startswith(str(tmp_path / "shots"))
    cmds = bridge.shell_commands()
    assert cmds[0].startswith("screencap -p /sdcard/screenshot_")
    assert cmds[-1].startswith("rm -f /sdcard/screenshot_")


def test_screenshot_pull_failure(tmp_path) -> None:
    suite, bridge, _, _ = _suite(tmp_path, checks=["screenshot"])
    bridge.pull_ok = False

    res = suite.run(SERIAL)[0]
    assert not res.passed
    assert bridge.shell_commands()[-1].startswith("rm -f ")


def test_all_checks_are_known(tmp_path) -> None:
    suite, *_ = _suite(tmp_path, checks=ALL_CHECKS)
    assert suite.check_names == ALL_CHECKS

    with pytest.raises(ValueError, match="unknown check"):
        _suite(tmp_path, checks=["liveness", "battery"])
