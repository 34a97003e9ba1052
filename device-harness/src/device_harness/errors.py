from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from device_harness.runtime.commands import CommandOutcome


class HarnessError(RuntimeError):
    """Base class for errors raised by device-harness."""


class ToolMissingError(HarnessError):
    """Raised when a required executable (emulator, adb, build tool) is not found."""

    def __init__(self, tool: str, *, hint: str = "") -> None:
        self.tool = tool
        msg = f"tool missing: {tool}"
        if hint:
            msg += f" ({hint})"
        super().__init__(msg)


class CommandTimeoutError(HarnessError):
    """Raised when a blocking command does not finish within its timeout."""

    def __init__(self, args: list[str], timeout_s: float) -> None:
        self.args_list = list(args)
        self.timeout_s = float(timeout_s)
        cmd = " ".join(self.args_list)
        super().__init__(f"command timed out after {self.timeout_s:g}s: {cmd}")


class CommandFailureError(HarnessError):
    """Raised by callers that treat a non-zero exit or missing marker as fatal."""

    def __init__(self, message: str, *, outcome: Optional["CommandOutcome"] = None) -> None:
        self.outcome = outcome
        if outcome is not None:
            combined = outcome.combined_output().strip()
            if combined:
                message = f"{message}\n{combined}"
        super().__init__(message)


class DeviceBusyError(HarnessError):
    """Raised when a device serial (or a pipeline) is already held by another run."""


class ConfigError(HarnessError):
    """Raised when a pipeline configuration file is malformed or fails validation."""


def describe_error(e: BaseException) -> str:
    """One-line rendering of an exception for stage and check details."""

    if isinstance(e, ToolMissingError):
        return str(e)
    msg = str(e).strip()
    return f"{type(e).__name__}: {msg}" if msg else type(e).__name__
