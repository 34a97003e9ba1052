"""adb bridge.

Thin verb layer over ``CommandRunner``: each verb is exactly one synchronous
adb invocation against one device serial. Verbs report *whether* a command
succeeded (exit code plus the expected success marker) and leave diagnosis to
the caller; the raw output of the most recent verb is kept in
``last_outcome``.

Notes
-----
* Verbs never retry. Retrying (e.g. while a device is booting) is the
  caller's decision.
* ``shell`` passes the command string as a single argument, so adb runs it
  through the device shell (pipes and quoting behave as on the device).
"""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Dict, Optional

from device_harness.runtime.commands import CommandInvocation, CommandOutcome, CommandRunner

logger = logging.getLogger(__name__)

ONLINE_STATE = "device"
INSTALL_SUCCESS_MARKER = "Success"
LAUNCH_SUCCESS_MARKERS = ("Starting", "Activity")
LAUNCH_ERROR_MARKERS = ("Error:", "Exception", "does not exist")


def _parse_adb_devices(txt: str) -> Dict[str, str]:
    """Parse `adb devices` output into {serial: state}.

    Header and daemon chatter lines are skipped; a serial only appears once
    a state column is present.
    """

    states: Dict[str, str] = {}
    for raw in txt.splitlines():
        line = raw.strip()
        if not line or line.startswith("*") or line.startswith("List of devices attached"):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        states[parts[0]] = parts[1]
    return states


def _parse_component(package_name: str, activity_name: str) -> str:
    pkg = str(package_name).strip()
    act = str(activity_name).strip()
    if "/" in act:
        return act
    return f"{pkg}/{act}"


def _launch_succeeded(outcome: CommandOutcome) -> bool:
    if not outcome.ok():
        return False
    out = outcome.combined_output()
    if any(marker in out for marker in LAUNCH_ERROR_MARKERS):
        return False
    return any(marker in out for marker in LAUNCH_SUCCESS_MARKERS)


class DeviceBridge:
    """adb verbs targeted at a device serial."""

    def __init__(
        self,
        *,
        runner: CommandRunner,
        adb_path: str = "adb",
        timeout_s: float = 60.0,
    ) -> None:
        self._runner = runner
        self._adb_path = str(adb_path)
        self._timeout_s = float(timeout_s)
        self.last_outcome: Optional[CommandOutcome] = None

    @property
    def adb_path(self) -> str:
        return self._adb_path

    def adb(
        self,
        *args: str,
        device_id: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ) -> CommandOutcome:
        argv: list[str] = []
        if device_id:
            argv += ["-s", str(device_id)]
        argv += [str(a) for a in args]
        outcome = self._runner.run(
            CommandInvocation(executable=self._adb_path, args=tuple(argv)),
            timeout_s=self._timeout_s if timeout_s is None else float(timeout_s),
        )
        self.last_outcome = outcome
        return outcome

    # ------------------------------- Discovery -------------------------------

    def device_states(self) -> Dict[str, str]:
        res = self.adb("devices")
        if not res.ok():
            return {}
        return _parse_adb_devices(res.stdout)

    def list_devices(self) -> set[str]:
        return set(self.device_states())

    def is_online(self, device_id: str) -> bool:
        return self.device_states().get(str(device_id)) == ONLINE_STATE

    def getprop(self, device_id: str, key: str, *, timeout_s: Optional[float] = None) -> str:
        res = self.adb("shell", "getprop", key, device_id=device_id, timeout_s=timeout_s)
        if not res.ok():
            return ""
        return res.stdout.strip().strip("\r")

    # ------------------------------- App lifecycle ---------------------------

    def install(self, device_id: str, package_path: str | Path) -> bool:
        res = self.adb("install", "-r", str(package_path), device_id=device_id)
        ok = res.ok() and INSTALL_SUCCESS_MARKER in res.combined_output()
        if not ok:
            logger.error("install failed (rc=%s): %s", res.returncode, res.combined_output())
        return ok

    def start_activity(self, device_id: str, package_name: str, activity_name: str) -> bool:
        component = _parse_component(package_name, activity_name)
        res = self.adb("shell", f"am start -n {shlex.quote(component)}", device_id=device_id)
        ok = _launch_succeeded(res)
        if not ok:
            logger.error("launch of %s failed: %s", component, res.combined_output())
        return ok

    # ------------------------------- Introspection ---------------------------

    def shell_outcome(
        self, device_id: str, command: str, *, timeout_s: Optional[float] = None
    ) -> CommandOutcome:
        return self.adb("shell", command, device_id=device_id, timeout_s=timeout_s)

    def shell(self, device_id: str, command: str, *, timeout_s: Optional[float] = None) -> str:
        return self.shell_outcome(device_id, command, timeout_s=timeout_s).stdout

    def pull_file(self, device_id: str, remote_path: str, local_dir: str | Path) -> bool:
        local = Path(local_dir)
        local.mkdir(parents=True, exist_ok=True)
        res = self.adb("pull", str(remote_path), str(local), device_id=device_id)
        if not res.ok():
            logger.warning("pull of %s failed: %s", remote_path, res.combined_output())
        return res.ok()

    def build_info(self, device_id: str) -> Dict[str, Optional[str]]:
        """Best-effort device identity for reports."""

        info: Dict[str, Optional[str]] = {}
        for label, key in (
            ("build_fingerprint", "ro.build.fingerprint"),
            ("android_api_level", "ro.build.version.sdk"),
        ):
            info[label] = self.getprop(device_id, key) or None
        return info

    # ------------------------------- Emulator --------------------------------

    def emu_kill(self, device_id: str) -> bool:
        res = self.adb("emu", "kill", device_id=device_id)
        return res.ok()
