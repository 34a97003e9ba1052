"""Bounded polling.

``poll_until`` is the single waiting primitive used for device boot and any
other "check, compare elapsed against the deadline, sleep" loop. It never
blocks past ``timeout_s`` (plus one probe) and reports one of three states:

* ``ready``   - the probe returned True
* ``timeout`` - the deadline elapsed without the probe succeeding
* ``error``   - the probe raised; polling stops immediately

Clock and sleep are injectable so tests can drive the loop without waiting.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional


class PollStatus(str, Enum):
    READY = "ready"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass(frozen=True)
class PollResult:
    status: PollStatus
    elapsed_s: float
    attempts: int
    detail: str = ""

    @property
    def ready(self) -> bool:
        return self.status is PollStatus.READY


class PollAbort(Exception):
    """Raised by a probe to stop polling with ``PollStatus.ERROR``."""


def poll_until(
    probe: Callable[[], bool],
    *,
    timeout_s: float,
    interval_s: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
    on_wait: Optional[Callable[[float, float], None]] = None,
) -> PollResult:
    if timeout_s < 0:
        raise ValueError(f"timeout_s must be >= 0 (got {timeout_s})")
    if interval_s <= 0:
        raise ValueError(f"interval_s must be > 0 (got {interval_s})")

    start = clock()
    attempts = 0
    while True:
        attempts += 1
        try:
            if probe():
                return PollResult(PollStatus.READY, clock() - start, attempts)
        except Exception as e:
            return PollResult(
                PollStatus.ERROR,
                clock() - start,
                attempts,
                detail=str(e) or type(e).__name__,
            )

        elapsed = clock() - start
        if elapsed >= timeout_s:
            return PollResult(
                PollStatus.TIMEOUT,
                elapsed,
                attempts,
                detail=f"not ready after {elapsed:.1f}s (timeout {timeout_s:g}s)",
            )
        sleep(min(interval_s, timeout_s - elapsed))
        if on_wait is not None:
            on_wait(clock() - start, timeout_s)
