"""The build -> boot -> install -> launch -> check -> report pipeline.

Stages run strictly in order through ``StageExecutor``. A failed setup stage
(build, start device, wait ready, install, launch) aborts the run; the
remaining stages stay ``not-run``. Check failures are data and never abort.

Whatever happens, ``run_once``:

* stops the device it started (or adopted) before returning,
* writes exactly one report, last,
* returns the Report rather than raising.
"""

from __future__ import annotations

import logging
import platform
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from device_harness.checks.suite import CheckSuite
from device_harness.config import PipelineConfig
from device_harness.errors import DeviceBusyError, HarnessError, describe_error
from device_harness.pipeline.build import BuildProvider, build_provider_from_config
from device_harness.pipeline.executor import StageExecutor
from device_harness.pipeline.types import (
    SETUP_STAGES,
    WORK_STAGES,
    Report,
    Stage,
    StageName,
    StageOutcome,
    StageStatus,
)
from device_harness.reporting.text_report import ReportGenerator
from device_harness.runtime.android.bridge import DeviceBridge
from device_harness.runtime.android.supervisor import (
    DeviceStopResult,
    VirtualDeviceSupervisor,
)
from device_harness.runtime.commands import CommandRunner

logger = logging.getLogger(__name__)

OUTPUT_DETAIL_CHARS = 1000

SupervisorFactory = Callable[[], VirtualDeviceSupervisor]

_STAGE_LABELS: Dict[StageName, str] = {
    StageName.BUILD: "build",
    StageName.START_DEVICE: "start device",
    StageName.WAIT_READY: "wait ready",
    StageName.INSTALL: "install",
    StageName.LAUNCH: "launch",
    StageName.RUN_CHECKS: "run checks",
}


def abort_message(stage: StageName, outcome: StageOutcome) -> str:
    msg = f"{_STAGE_LABELS[stage]} failed"
    return f"{msg}: {outcome.detail}" if outcome.detail else msg


def supervisor_from_config(
    config: PipelineConfig,
    *,
    runner: CommandRunner,
    bridge: DeviceBridge,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> VirtualDeviceSupervisor:
    return VirtualDeviceSupervisor(
        runner=runner,
        bridge=bridge,
        emulator_path=config.resolve_emulator_path(),
        avd_name=config.avd_name,
        port=config.port,
        headless=config.headless,
        extra_args=config.emulator_args,
        boot_timeout_s=config.boot_timeout_s,
        poll_interval_s=config.boot_poll_interval_s,
        wait_boot_completed=config.wait_boot_completed,
        settle_after_start_s=config.settle_after_start_s,
        stop_grace_s=config.stop_grace_s,
        stop_adopted=config.stop_adopted,
        clock=clock,
        sleep=sleep,
    )


class Pipeline:
    def __init__(
        self,
        config: PipelineConfig,
        *,
        runner: Optional[CommandRunner] = None,
        bridge: Optional[DeviceBridge] = None,
        supervisor_factory: Optional[SupervisorFactory] = None,
        build_provider: Optional[BuildProvider] = None,
        check_suite: Optional[CheckSuite] = None,
        executor: Optional[StageExecutor] = None,
        report_generator: Optional[ReportGenerator] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self._runner = runner or CommandRunner(default_timeout_s=config.command_timeout_s)
        self._bridge = bridge or DeviceBridge(
            runner=self._runner,
            adb_path=config.resolve_adb_path(),
            timeout_s=config.command_timeout_s,
        )
        self._supervisor_factory = supervisor_factory or (
            lambda: supervisor_from_config(
                config, runner=self._runner, bridge=self._bridge, clock=clock, sleep=sleep
            )
        )
        self._build_provider = build_provider or build_provider_from_config(
            config, runner=self._runner
        )
        self._check_suite = check_suite or CheckSuite(
            bridge=self._bridge,
            config=config.checks,
            package_name=config.package_name,
            screenshot_dir=config.screenshot_dir,
            settle_between_s=config.settle_between_checks_s,
            clock=clock,
            sleep=sleep,
        )
        self._executor = executor or StageExecutor(clock=clock)
        self._report_generator = report_generator or ReportGenerator(config.report_dir)

        self._run_lock = threading.Lock()
        self._supervisor_lock = threading.Lock()
        self._supervisor: Optional[VirtualDeviceSupervisor] = None

        # Set by the build stage of the current run.
        self._artifact_path: str = config.artifact_path

    @property
    def serial(self) -> str:
        return self.config.serial

    # ------------------------------- Entry points ----------------------------

    def run_once(self) -> Report:
        """Run every stage once and return the (already written) Report."""

        if not self._run_lock.acquire(blocking=False):
            raise DeviceBusyError("a run of this pipeline is already in progress")
        try:
            return self._run()
        finally:
            self._run_lock.release()

    def run_continuously(
        self,
        interval_s: float,
        *,
        max_runs: Optional[int] = None,
        stop_event: Optional[threading.Event] = None,
        on_report: Optional[Callable[[Report], None]] = None,
    ) -> List[Report]:
        """Repeat ``run_once`` every ``interval_s`` until stopped.

        Runs never overlap: the next one starts only after the previous run
        (device stop and report included) has returned. ``stop_event`` also
        interrupts the wait between runs.
        """

        if interval_s < 0:
            raise ValueError("interval_s must be >= 0")
        stop_event = stop_event or threading.Event()
        reports: List[Report] = []
        while not stop_event.is_set():
            report = self.run_once()
            reports.append(report)
            if on_report is not None:
                on_report(report)
            if max_runs is not None and len(reports) >= max_runs:
                break
            logger.info("next run in %.0fs", interval_s)
            if stop_event.wait(interval_s):
                break
        return reports

    def stop_device_if_running(self) -> DeviceStopResult:
        """Manual cleanup hook; a no-op when no device is held."""

        with self._supervisor_lock:
            supervisor = self._supervisor
        if supervisor is None:
            return DeviceStopResult(attempted=False, detail="no running device")
        return supervisor.stop()

    # ------------------------------- Run -------------------------------------

    def _run(self) -> Report:
        cfg = self.config
        report = Report()
        report.metadata.update(
            {
                "platform": platform.platform(),
                "device": f"{cfg.avd_name} ({cfg.serial})",
                "package": cfg.package_name,
            }
        )
        self._artifact_path = cfg.artifact_path

        logger.info("run %s: starting pipeline for %s", report.run_id, cfg.package_name)
        with self._supervisor_lock:
            self._supervisor = None
        start = self._clock()
        try:
            with self._supervisor_lock:
                self._supervisor = self._supervisor_factory()
            self._run_stages(report)
        except Exception as e:
            logger.exception("run %s: unexpected error", report.run_id)
            report.add_error(f"unexpected error: {describe_error(e)}")
        finally:
            stop = self.stop_device_if_running()
            if stop.orphan_risk:
                report.add_error(stop.detail)
            report.duration_s = self._clock() - start
            self._generate_report(report)
        logger.info(
            "run %s: %s in %.1fs",
            report.run_id,
            "succeeded" if report.succeeded else "failed",
            report.duration_s,
        )
        return report

    def _skipped(self, name: StageName) -> bool:
        cfg = self.config
        return {
            StageName.BUILD: cfg.skip_build,
            StageName.INSTALL: cfg.skip_install,
            StageName.LAUNCH: cfg.skip_launch,
            StageName.RUN_CHECKS: cfg.skip_checks,
        }.get(name, False)

    def _run_stages(self, report: Report) -> None:
        actions: Dict[StageName, Callable[[], StageOutcome]] = {
            StageName.BUILD: self._build,
            StageName.START_DEVICE: (
                self._adopt_device if self.config.skip_start_device else self._start_device
            ),
            StageName.WAIT_READY: lambda: self._wait_ready(report),
            StageName.INSTALL: self._install,
            StageName.LAUNCH: self._launch,
            StageName.RUN_CHECKS: lambda: self._run_checks(report),
        }
        for name in WORK_STAGES:
            if self._skipped(name):
                logger.info("stage %s: skipped", name.value)
                report.record_stage(name, StageStatus.SKIPPED)
                continue

            stage = Stage(name.value, actions[name], self.config.stage_timeout(name.value))
            outcome = self._executor.execute(stage)
            if name is StageName.RUN_CHECKS and outcome.timed_out:
                report.seal()

            if not outcome.succeeded:
                status = StageStatus.FAILED
            elif name is StageName.START_DEVICE and self.config.skip_start_device:
                status = StageStatus.SKIPPED
            else:
                status = StageStatus.PASSED
            report.record_stage(name, status, outcome)

            if status is StageStatus.FAILED and name in SETUP_STAGES:
                report.add_error(abort_message(name, outcome))
                logger.error("run %s: aborting after %s", report.run_id, name.value)
                return

    def _generate_report(self, report: Report) -> None:
        outcome = self._executor.execute(
            Stage(StageName.GENERATE_REPORT.value, lambda: self._write_report(report))
        )
        report.stages[StageName.GENERATE_REPORT].status = (
            StageStatus.PASSED if outcome.succeeded else StageStatus.FAILED
        )
        report.stages[StageName.GENERATE_REPORT].outcome = outcome

    def _write_report(self, report: Report) -> StageOutcome:
        path = self._report_generator.generate(report)
        if path is None:
            return StageOutcome.failed("report not written")
        return StageOutcome.passed(str(path))

    # ------------------------------- Stage actions ---------------------------

    def _require_supervisor(self) -> VirtualDeviceSupervisor:
        supervisor = self._supervisor
        if supervisor is None:
            raise HarnessError("no device supervisor for this run")
        return supervisor

    def _build(self) -> StageOutcome:
        result = self._build_provider.build()
        if not result.success:
            return StageOutcome.failed(result.detail)
        self._artifact_path = result.artifact_path
        return StageOutcome.passed(result.artifact_path)

    def _start_device(self) -> StageOutcome:
        handle = self._require_supervisor().start()
        return StageOutcome.passed(f"{handle.name} on {handle.serial} (pid={handle.pid})")

    def _adopt_device(self) -> StageOutcome:
        handle = self._require_supervisor().adopt()
        return StageOutcome.passed(f"using running device {handle.serial}")

    def _wait_ready(self, report: Report) -> StageOutcome:
        supervisor = self._require_supervisor()
        result = supervisor.wait_until_ready()
        report.metadata["boot_wait_s"] = round(result.elapsed_s, 1)
        if not result.ready:
            return StageOutcome.failed(supervisor.failure_detail)
        self._record_device_info(report)
        return StageOutcome.passed(f"ready after {result.elapsed_s:.1f}s")

    def _record_device_info(self, report: Report) -> None:
        try:
            report.metadata.update(self._bridge.build_info(self.serial))
        except HarnessError as e:
            logger.warning("could not read device build info: %s", e)

    def _last_output(self) -> str:
        outcome = self._bridge.last_outcome
        if outcome is None:
            return ""
        return outcome.combined_output().strip()[-OUTPUT_DETAIL_CHARS:]

    def _install(self) -> StageOutcome:
        artifact = Path(self._artifact_path)
        if not artifact.is_file():
            return StageOutcome.failed(f"artifact not found: {artifact}")
        if not self._bridge.install(self.serial, artifact):
            return StageOutcome.failed(self._last_output() or "install rejected")
        if self.config.settle_after_install_s > 0:
            self._sleep(self.config.settle_after_install_s)
        return StageOutcome.passed(f"installed {artifact.name}")

    def _launch(self) -> StageOutcome:
        cfg = self.config
        if not self._bridge.start_activity(self.serial, cfg.package_name, cfg.activity_name):
            return StageOutcome.failed(self._last_output() or "activity did not start")
        if cfg.settle_after_launch_s > 0:
            self._sleep(cfg.settle_after_launch_s)
        return StageOutcome.passed(f"launched {cfg.package_name}")

    def _run_checks(self, report: Report) -> StageOutcome:
        # Results go straight into the report; a sealed report drops late ones.
        results = self._check_suite.run(self.serial, sink=report.add_result)
        if not results:
            return StageOutcome.passed("no checks enabled", score=0.0)
        passed = sum(1 for r in results if r.passed)
        score = sum(r.score for r in results) / len(results)
        return StageOutcome.passed(f"{passed}/{len(results)} checks passed", score=score)
