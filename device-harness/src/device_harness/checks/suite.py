"""Post-launch checks against the app under test.

Each check is one probe through ``DeviceBridge`` yielding one ``TestResult``.
Checks run strictly one after another (adb shell calls against one device
share a channel), and a check that raises is recorded as a failed result so
the remaining checks still run.

Notes
-----
* ``input_simulation`` only verifies that ``input tap`` was accepted; it does
  not observe whether the app reacted to the tap.
* ``performance`` reads the cumulative ``Total frames rendered`` counter from
  ``dumpsys gfxinfo`` before and after the sampling window.
"""

from __future__ import annotations

import datetime
import logging
import re
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from device_harness.config import (
    CHECK_INPUT_SIMULATION,
    CHECK_LIVENESS,
    CHECK_MEMORY,
    CHECK_PERFORMANCE,
    CHECK_SCREENSHOT,
    CHECK_STABILITY,
    CheckConfig,
)
from device_harness.errors import describe_error
from device_harness.pipeline.types import TestResult
from device_harness.runtime.android.bridge import DeviceBridge

logger = logging.getLogger(__name__)

INPUT_SIMULATION_NOTE = "tap accepted; app reaction not verified"

_FRAMES_RE = re.compile(r"Total frames rendered:\s*(\d+)")
_PSS_RE = re.compile(r"TOTAL PSS:\s*(\d+)")
_TOTAL_RE = re.compile(r"^\s*TOTAL\s+(\d+)", re.MULTILINE)


def _parse_total_frames(txt: str) -> Optional[int]:
    m = _FRAMES_RE.search(txt or "")
    return int(m.group(1)) if m else None


def _parse_total_pss_kb(txt: str) -> Optional[int]:
    """Total PSS in KB from `dumpsys meminfo <pkg>` (old and new layouts)."""

    for pattern in (_PSS_RE, _TOTAL_RE):
        m = pattern.search(txt or "")
        if m:
            return int(m.group(1))
    return None


def _process_listed(ps_output: str, package_name: str) -> bool:
    for line in (ps_output or "").splitlines():
        parts = line.split()
        if parts and parts[-1] == package_name:
            return True
    return False


class CheckSuite:
    def __init__(
        self,
        *,
        bridge: DeviceBridge,
        config: CheckConfig,
        package_name: str,
        screenshot_dir: str | Path = "screenshots",
        settle_between_s: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._bridge = bridge
        self._config = config
        self._package_name = str(package_name)
        self._screenshot_dir = Path(screenshot_dir)
        self._settle_between_s = float(settle_between_s)
        self._clock = clock
        self._sleep = sleep

        self._checks: Dict[str, Callable[[str], TestResult]] = {
            CHECK_LIVENESS: self.check_liveness,
            CHECK_INPUT_SIMULATION: self.check_input_simulation,
            CHECK_PERFORMANCE: self.check_performance,
            CHECK_MEMORY: self.check_memory,
            CHECK_STABILITY: self.check_stability,
            CHECK_SCREENSHOT: self.check_screenshot,
        }
        unknown = [name for name in config.enabled if name not in self._checks]
        if unknown:
            raise ValueError(f"unknown check(s): {', '.join(unknown)}")

    @property
    def check_names(self) -> tuple[str, ...]:
        return tuple(self._config.enabled)

    def run(
        self,
        device_id: str,
        *,
        sink: Optional[Callable[[TestResult], object]] = None,
    ) -> List[TestResult]:
        """Run the enabled checks in order.

        Each result is handed to ``sink`` as soon as it exists, so a caller
        that stops waiting part-way still keeps the results produced so far.
        """

        results: List[TestResult] = []
        for i, name in enumerate(self.check_names):
            if i and self._settle_between_s > 0:
                self._sleep(self._settle_between_s)
            result = self.run_check(name, device_id)
            results.append(result)
            if sink is not None:
                sink(result)
        return results

    def run_check(self, name: str, device_id: str) -> TestResult:
        logger.info("check %s: start", name)
        try:
            result = self._checks[name](device_id)
        except Exception as e:
            logger.exception("check %s raised", name)
            result = TestResult(name=name, passed=False, score=0.0, detail=describe_error(e))
        logger.info(
            "check %s: %s (score %.1f) %s",
            name,
            "pass" if result.passed else "fail",
            result.score,
            result.detail,
        )
        return result

    # ------------------------------- Checks ----------------------------------

    def is_app_running(self, device_id: str) -> bool:
        res = self._bridge.shell_outcome(device_id, "ps -A")
        out = res.stdout
        if not res.ok() or not out.strip():
            # Older toolbox `ps` rejects -A.
            out = self._bridge.shell(device_id, "ps")
        return _process_listed(out, self._package_name)

    def check_liveness(self, device_id: str) -> TestResult:
        if self.is_app_running(device_id):
            return TestResult(CHECK_LIVENESS, True, 100.0, f"{self._package_name} is running")
        return TestResult(CHECK_LIVENESS, False, 0.0, f"{self._package_name} not in process list")

    def check_input_simulation(self, device_id: str) -> TestResult:
        x, y = int(self._config.tap_x), int(self._config.tap_y)
        res = self._bridge.shell_outcome(device_id, f"input tap {x} {y}")
        if res.ok():
            return TestResult(
                CHECK_INPUT_SIMULATION, True, 100.0, f"tap at ({x}, {y}); {INPUT_SIMULATION_NOTE}"
            )
        return TestResult(
            CHECK_INPUT_SIMULATION,
            False,
            0.0,
            f"input tap rejected (rc={res.returncode}): {res.combined_output().strip()}",
        )

    def _frames_rendered(self, device_id: str) -> Optional[int]:
        return _parse_total_frames(
            self._bridge.shell(device_id, f"dumpsys gfxinfo {self._package_name}")
        )

    def check_performance(self, device_id: str) -> TestResult:
        cfg = self._config
        start_frames = self._frames_rendered(device_id)
        start = self._clock()
        self._sleep(cfg.perf_window_s)
        end_frames = self._frames_rendered(device_id)
        elapsed = self._clock() - start
        if elapsed <= 0:
            elapsed = cfg.perf_window_s

        if start_frames is None or end_frames is None:
            return TestResult(CHECK_PERFORMANCE, False, 0.0, "frame counter unavailable")

        fps = max(0, end_frames - start_frames) / elapsed
        score = fps / cfg.target_fps * 100.0
        passed = fps >= cfg.min_fps
        return TestResult(
            CHECK_PERFORMANCE,
            passed,
            score,
            f"{fps:.1f} fps over {elapsed:.1f}s (min {cfg.min_fps:g})",
        )

    def check_memory(self, device_id: str) -> TestResult:
        cfg = self._config
        out = self._bridge.shell(device_id, f"dumpsys meminfo {self._package_name}")
        total_kb = _parse_total_pss_kb(out)
        if total_kb is None:
            return TestResult(CHECK_MEMORY, False, 0.0, "memory counter unavailable")

        mb = total_kb / 1024.0
        score = 100.0 - mb / cfg.memory_ceiling_mb * 100.0
        passed = mb < cfg.memory_ceiling_mb
        return TestResult(
            CHECK_MEMORY,
            passed,
            score,
            f"{mb:.1f} MB PSS (ceiling {cfg.memory_ceiling_mb:g} MB)",
        )

    def check_stability(self, device_id: str) -> TestResult:
        cfg = self._config
        start = self._clock()
        samples = 0
        while True:
            elapsed = self._clock() - start
            samples += 1
            if not self.is_app_running(device_id):
                return TestResult(
                    CHECK_STABILITY,
                    False,
                    0.0,
                    f"process lost after {elapsed:.1f}s of {cfg.stability_window_s:g}s",
                )
            if elapsed >= cfg.stability_window_s:
                break
            self._sleep(min(cfg.stability_interval_s, cfg.stability_window_s - elapsed))
        return TestResult(
            CHECK_STABILITY,
            True,
            100.0,
            f"alive for {cfg.stability_window_s:g}s ({samples} samples)",
        )

    def check_screenshot(self, device_id: str) -> TestResult:
        stamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        name = f"screenshot_{stamp}.png"
        remote = f"/sdcard/{name}"

        res = self._bridge.shell_outcome(device_id, f"screencap -p {remote}")
        if not res.ok():
            return TestResult(
                CHECK_SCREENSHOT, False, 0.0, f"screencap failed: {res.combined_output().strip()}"
            )
        try:
            pulled = self._bridge.pull_file(device_id, remote, self._screenshot_dir)
        finally:
            self._bridge.shell_outcome(device_id, f"rm -f {remote}")

        local = self._screenshot_dir / name
        if pulled and local.is_file():
            return TestResult(CHECK_SCREENSHOT, True, 100.0, str(local))
        return TestResult(CHECK_SCREENSHOT, False, 0.0, f"pull of {remote} failed")
