"""External command execution.

Two modes are supported:

* ``CommandRunner.run`` for short, blocking tool invocations (adb verbs,
  build commands). Output is captured in full and returned as data; a
  non-zero exit code is *not* an exception.
* ``CommandRunner.spawn`` for processes that outlive the call (the emulator).
  Both output pipes are drained by background threads for the lifetime of
  the process so a chatty emulator never blocks on a full pipe buffer; the
  last lines are kept for diagnosis. On POSIX the process gets its own
  session, and stopping it signals the whole process group so children the
  launcher forked (emulator -> qemu) go down with it.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Deque, List, Optional, Sequence

from device_harness.errors import CommandTimeoutError, ToolMissingError

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_TAIL_LINES = 200

_PROCESS_GROUPS = hasattr(os, "killpg")
_PROC_ROOT = Path("/proc")


def _group_alive(pgid: int) -> bool:
    """True while any non-zombie process is left in process group ``pgid``."""

    if _PROC_ROOT.is_dir():
        for stat in _PROC_ROOT.glob("[0-9]*/stat"):
            try:
                # "<pid> (<comm>) <state> <ppid> <pgrp> ..."; comm may hold spaces.
                fields = stat.read_text().rsplit(")", 1)[1].split()
                state, pgrp = fields[0], int(fields[2])
            except (OSError, IndexError, ValueError):
                continue
            if pgrp == pgid and state != "Z":
                return True
        return False
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@dataclass(frozen=True)
class CommandInvocation:
    executable: str
    args: tuple[str, ...] = ()
    cwd: Optional[str] = None

    @classmethod
    def of(cls, executable: str, *args: str, cwd: Optional[str] = None) -> "CommandInvocation":
        return cls(executable=str(executable), args=tuple(str(a) for a in args), cwd=cwd)

    def argv(self) -> list[str]:
        return [self.executable, *self.args]


@dataclass(frozen=True)
class CommandOutcome:
    args: list[str]
    returncode: int
    stdout: str
    stderr: str
    duration_s: float = 0.0

    def ok(self) -> bool:
        return self.returncode == 0

    def combined_output(self) -> str:
        parts = [p for p in (self.stdout, self.stderr) if p and p.strip()]
        return "\n".join(p.rstrip("\n") for p in parts)


class ProcessHandle:
    """A background process started by ``CommandRunner.spawn``."""

    def __init__(
        self,
        proc: subprocess.Popen,
        *,
        args: Sequence[str],
        tail_lines: int = DEFAULT_OUTPUT_TAIL_LINES,
        process_group: bool = False,
    ) -> None:
        self._proc = proc
        self.args = list(args)
        # The process leads its own group only when spawned in a new session.
        self._pgid: Optional[int] = int(proc.pid) if process_group else None
        self._tail: Deque[str] = deque(maxlen=tail_lines)
        self._tail_lock = threading.Lock()
        self._drainers: List[threading.Thread] = []
        for label, stream in (("stdout", proc.stdout), ("stderr", proc.stderr)):
            if stream is None:
                continue
            t = threading.Thread(
                target=self._drain,
                args=(label, stream),
                name=f"drain-{label}-{proc.pid}",
                daemon=True,
            )
            t.start()
            self._drainers.append(t)

    @property
    def pid(self) -> int:
        return int(self._proc.pid)

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.poll()

    def is_alive(self) -> bool:
        return self._proc.poll() is None

    def output_tail(self) -> list[str]:
        with self._tail_lock:
            return list(self._tail)

    def group_alive(self) -> bool:
        """True while a child the process started is still running in its group."""

        if self._pgid is None:
            return False
        self._proc.poll()
        return _group_alive(self._pgid)

    def terminate(self, *, grace_s: float = 10.0) -> bool:
        """Stop the process and its group; True when nothing is left running.

        Terminating an already-exited process is a no-op. SIGTERM is sent
        first and escalated to SIGKILL after ``grace_s``.
        """

        if not self.is_alive() and not self.group_alive():
            return True
        self._signal(signal.SIGTERM)
        if not self._wait_gone(grace_s):
            logger.warning("pid=%s ignored SIGTERM for %.1fs; killing", self.pid, grace_s)
            self._signal(signal.SIGKILL)
            if not self._wait_gone(grace_s):
                logger.error("pid=%s or its children still alive after SIGKILL", self.pid)
        self._join_drainers(timeout_s=1.0)
        return not self.is_alive() and not self.group_alive()

    def _signal(self, sig: int) -> None:
        if self._pgid is None:
            # Popen skips the signal once the process has been reaped.
            self._proc.send_signal(sig)
            return
        try:
            os.killpg(self._pgid, sig)
        except ProcessLookupError:
            pass

    def _wait_gone(self, timeout_s: float) -> bool:
        deadline = time.monotonic() + timeout_s
        while True:
            try:
                self._proc.wait(timeout=0.05)
            except subprocess.TimeoutExpired:
                pass
            if not self.is_alive() and not self.group_alive():
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.05)

    def _join_drainers(self, *, timeout_s: float) -> None:
        for t in self._drainers:
            t.join(timeout=timeout_s)

    def _drain(self, label: str, stream: IO[str]) -> None:
        try:
            for line in stream:
                line = line.rstrip("\r\n")
                with self._tail_lock:
                    self._tail.append(f"[{label}] {line}")
                logger.debug("pid=%s %s: %s", self._proc.pid, label, line)
        except ValueError:
            # Stream closed underneath us while the process was being torn down.
            pass
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def __repr__(self) -> str:  # pragma: no cover
        return f"ProcessHandle(pid={self.pid}, alive={self.is_alive()}, args={self.args!r})"


@dataclass
class CommandRunner:
    """Runs external tools; the only place that touches ``subprocess``."""

    default_timeout_s: Optional[float] = 60.0
    tail_lines: int = DEFAULT_OUTPUT_TAIL_LINES

    def run(
        self,
        invocation: CommandInvocation,
        *,
        timeout_s: Optional[float] = None,
    ) -> CommandOutcome:
        cmd = invocation.argv()
        timeout = self.default_timeout_s if timeout_s is None else float(timeout_s)
        start = time.monotonic()
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                errors="replace",
                cwd=invocation.cwd,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise ToolMissingError(invocation.executable, hint="not found on disk or PATH") from e
        except PermissionError as e:
            raise ToolMissingError(invocation.executable, hint="not executable") from e
        except subprocess.TimeoutExpired as e:
            raise CommandTimeoutError(cmd, timeout or 0.0) from e

        outcome = CommandOutcome(
            args=cmd,
            returncode=int(proc.returncode),
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            duration_s=time.monotonic() - start,
        )
        if not outcome.ok():
            logger.debug("command failed (rc=%s): %s", outcome.returncode, " ".join(cmd))
            if outcome.stderr.strip():
                logger.warning("stderr from %s: %s", invocation.executable, outcome.stderr.strip())
        return outcome

    def spawn(self, invocation: CommandInvocation) -> ProcessHandle:
        cmd = invocation.argv()
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                cwd=invocation.cwd,
                start_new_session=_PROCESS_GROUPS,
            )
        except FileNotFoundError as e:
            raise ToolMissingError(invocation.executable, hint="not found on disk or PATH") from e
        except PermissionError as e:
            raise ToolMissingError(invocation.executable, hint="not executable") from e
        logger.info("spawned pid=%s: %s", proc.pid, " ".join(cmd))
        return ProcessHandle(
            proc, args=cmd, tail_lines=self.tail_lines, process_group=_PROCESS_GROUPS
        )
