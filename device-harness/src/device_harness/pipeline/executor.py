"""Timeout-guarded execution of one stage.

The stage action runs on a daemon worker thread. If it has not returned when
the stage timeout elapses, the stage is reported as failed with detail
``stage timeout`` and the worker is abandoned: it is no longer awaited, but
it is not killed either. Only the emulator process has a hard kill path
(``VirtualDeviceSupervisor.stop``).

Exceptions raised by an action never escape ``execute``; they become failed
outcomes carrying the exception message.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict

from device_harness.errors import describe_error
from device_harness.pipeline.types import Stage, StageOutcome

logger = logging.getLogger(__name__)

STAGE_TIMEOUT_DETAIL = "stage timeout"


class StageExecutor:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock

    def execute(self, stage: Stage) -> StageOutcome:
        logger.info("stage %s: start", stage.name)
        start = self._clock()

        box: Dict[str, Any] = {}
        done = threading.Event()

        def _target() -> None:
            try:
                box["outcome"] = stage.action()
            except Exception as e:
                box["error"] = e
            finally:
                done.set()

        if stage.timeout_s is None:
            _target()
        else:
            worker = threading.Thread(target=_target, name=f"stage-{stage.name}", daemon=True)
            worker.start()
            done.wait(timeout=float(stage.timeout_s))

        if not done.is_set():
            outcome = StageOutcome(succeeded=False, detail=STAGE_TIMEOUT_DETAIL, timed_out=True)
            logger.error(
                "stage %s: no result after %.1fs; abandoning it", stage.name, stage.timeout_s
            )
        elif "error" in box:
            err = box["error"]
            outcome = StageOutcome.failed(describe_error(err))
            logger.error("stage %s raised %s", stage.name, outcome.detail)
            logger.debug("stage %s traceback", stage.name, exc_info=err)
        else:
            result = box.get("outcome")
            if isinstance(result, StageOutcome):
                outcome = result
            else:
                outcome = StageOutcome.failed(
                    f"stage action returned {type(result).__name__}, expected StageOutcome"
                )

        outcome = replace(outcome, duration_s=self._clock() - start)
        logger.info(
            "stage %s: %s (%.1fs)%s",
            stage.name,
            "pass" if outcome.succeeded else "fail",
            outcome.duration_s,
            f" - {outcome.detail}" if outcome.detail else "",
        )
        return outcome
