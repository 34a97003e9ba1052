from __future__ import annotations

import threading
import time

from fakes import FakeClock

from device_harness.errors import ToolMissingError
from device_harness.pipeline.executor import STAGE_TIMEOUT_DETAIL, StageExecutor
from device_harness.pipeline.types import Stage, StageOutcome


def test_execute_returns_action_outcome_with_duration() -> None:
    clock = FakeClock()

    def action() -> StageOutcome:
        clock.sleep(2.5)
        return StageOutcome.passed("installed", score=90)

    out = StageExecutor(clock=clock).execute(Stage("install", action, timeout_s=300))

    assert out.succeeded
    assert out.score == 90.0
    assert out.detail == "installed"
    assert out.duration_s == 2.5
    assert not out.timed_out


def test_execute_without_timeout_runs_inline() -> None:
    seen: list[str] = []

    def action() -> StageOutcome:
        seen.append(threading.current_thread().name)
        return StageOutcome.passed()

    StageExecutor().execute(Stage("generate_report", action))
    assert seen == [threading.current_thread().name]


def test_exception_becomes_failed_outcome() -> None:
    def action() -> StageOutcome:
        raise ValueError("apk is corrupt")

    out = StageExecutor().execute(Stage("install", action, timeout_s=5))

    assert not out.succeeded
    assert out.detail == "ValueError: apk is corrupt"
    assert out.score == 0.0


def test_tool_missing_detail_is_readable() -> None:
    def action() -> StageOutcome:
        raise ToolMissingError("emulator", hint="emulator binary not found")

    out = StageExecutor().execute(Stage("start_device", action))
    assert out.detail == "tool missing: emulator (emulator binary not found)"


def test_timeout_abandons_the_action() -> None:
    release = threading.Event()
    finished = threading.Event()

    def action() -> StageOutcome:
        release.wait(10)
        finished.set()
        return StageOutcome.passed()

    started = time.monotonic()
    out = StageExecutor().execute(Stage("run_checks", action, timeout_s=0.05))
    waited = time.monotonic() - started

    assert not out.succeeded
    assert out.timed_out
    assert out.detail == STAGE_TIMEOUT_DETAIL
    assert waited < 5
    assert not finished.is_set()

    release.set()
    assert finished.wait(5)


def test_non_outcome_return_is_a_failure() -> None:
    out = StageExecutor().execute(Stage("launch", lambda: True, timeout_s=5))
    assert not out.succeeded
    assert "returned bool" in out.detail


def test_outcome_score_is_clamped() -> None:
    assert StageOutcome(succeeded=True, score=150).score == 100.0
    assert StageOutcome(succeeded=False, score=-3).score == 0.0
