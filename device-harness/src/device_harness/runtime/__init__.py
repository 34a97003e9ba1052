"""Process execution and polling primitives shared by the device layer."""

from __future__ import annotations

from device_harness.runtime.commands import (
    CommandInvocation,
    CommandOutcome,
    CommandRunner,
    ProcessHandle,
)
from device_harness.runtime.polling import PollAbort, PollResult, PollStatus, poll_until

__all__ = [
    "CommandInvocation",
    "CommandOutcome",
    "CommandRunner",
    "PollAbort",
    "PollResult",
    "PollStatus",
    "ProcessHandle",
    "poll_until",
]
