"""Emulator lifecycle.

``VirtualDeviceSupervisor`` owns exactly one emulator process:

    idle -> starting -> booting -> ready -> stopping -> stopped
                 \\          \\
                  +----------+--> failed   (absorbing)

Readiness is only ever reported after one poll observes, in the same
iteration, that the serial is listed by `adb devices` with state ``device``
(and, by default, that ``sys.boot_completed`` is 1). Stopping issues the
console kill (`adb emu kill`) *and* terminates the OS process group; each is
attempted even if the other fails, and anything left alive in the group is
reported as an orphan. An adopted device has no process of ours, so its
liveness is whatever `adb devices` says.

A supervisor holds a lease on its serial from ``start``/``adopt`` until
``stop``; a second supervisor asking for the same serial gets
``DeviceBusyError`` instead of sharing the device.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional, Sequence

from device_harness.errors import (
    CommandTimeoutError,
    DeviceBusyError,
    HarnessError,
    ToolMissingError,
)
from device_harness.runtime.android.bridge import ONLINE_STATE, DeviceBridge
from device_harness.runtime.commands import CommandInvocation, CommandRunner, ProcessHandle
from device_harness.runtime.polling import PollAbort, PollResult, PollStatus, poll_until

logger = logging.getLogger(__name__)


class DeviceState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    BOOTING = "booting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


_LEASES: Dict[str, int] = {}
_LEASES_LOCK = threading.Lock()


def _acquire_lease(serial: str, owner: object) -> None:
    with _LEASES_LOCK:
        holder = _LEASES.get(serial)
        if holder is not None and holder != id(owner):
            raise DeviceBusyError(f"device {serial} is already held by another run")
        _LEASES[serial] = id(owner)


def _release_lease(serial: str, owner: object) -> None:
    with _LEASES_LOCK:
        if _LEASES.get(serial) == id(owner):
            del _LEASES[serial]


def serial_for_port(port: int) -> str:
    return f"emulator-{int(port)}"


@dataclass
class DeviceHandle:
    """One emulator instance as seen by its supervisor."""

    name: str
    port: int
    process: Optional[ProcessHandle] = None
    external: bool = False
    # Adopted devices have no process of ours; liveness asks the bridge instead.
    liveness: Optional[Callable[[], bool]] = field(default=None, repr=False)
    _ready: bool = field(default=False, repr=False)
    _invalidated: bool = field(default=False, repr=False)

    @property
    def serial(self) -> str:
        return serial_for_port(self.port)

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def invalidated(self) -> bool:
        return self._invalidated

    def is_live(self) -> bool:
        if self._invalidated:
            return False
        if self.external:
            return self.liveness() if self.liveness is not None else True
        return self.process is not None and self.process.is_alive()

    @property
    def ready(self) -> bool:
        # A handle without a live process is never ready, whatever the flag says.
        return self._ready and self.is_live()


@dataclass(frozen=True)
class DeviceStopResult:
    attempted: bool
    kill_command_ok: Optional[bool] = None
    process_terminated: Optional[bool] = None
    orphan_risk: bool = False
    detail: str = ""


class VirtualDeviceSupervisor:
    def __init__(
        self,
        *,
        runner: CommandRunner,
        bridge: DeviceBridge,
        emulator_path: str = "emulator",
        avd_name: str,
        port: int = 5554,
        headless: bool = True,
        extra_args: Sequence[str] = (),
        boot_timeout_s: float = 120.0,
        poll_interval_s: float = 2.0,
        wait_boot_completed: bool = True,
        settle_after_start_s: float = 5.0,
        stop_grace_s: float = 10.0,
        stop_adopted: bool = False,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._runner = runner
        self._bridge = bridge
        self._emulator_path = str(emulator_path)
        self._avd_name = str(avd_name)
        self._port = int(port)
        self._headless = bool(headless)
        self._extra_args = [str(a) for a in extra_args]
        self._boot_timeout_s = float(boot_timeout_s)
        self._poll_interval_s = float(poll_interval_s)
        self._wait_boot_completed = bool(wait_boot_completed)
        self._settle_after_start_s = float(settle_after_start_s)
        self._stop_grace_s = float(stop_grace_s)
        self._stop_adopted = bool(stop_adopted)
        self._clock = clock
        self._sleep = sleep

        self._lock = threading.RLock()
        self._state = DeviceState.IDLE
        self._handle: Optional[DeviceHandle] = None
        self.failure_detail: str = ""

    # ------------------------------- Accessors -------------------------------

    @property
    def state(self) -> DeviceState:
        return self._state

    @property
    def handle(self) -> Optional[DeviceHandle]:
        return self._handle

    @property
    def serial(self) -> str:
        return serial_for_port(self._port)

    def launch_args(self) -> list[str]:
        args = ["-avd", self._avd_name, "-port", str(self._port)]
        if self._headless:
            args += ["-no-window", "-no-audio"]
        return args + self._extra_args

    def _set_state(self, state: DeviceState) -> None:
        if state is not self._state:
            logger.debug("device %s: %s -> %s", self.serial, self._state.value, state.value)
        self._state = state

    def _fail(self, detail: str) -> None:
        self.failure_detail = detail
        self._set_state(DeviceState.FAILED)
        if self._handle is not None:
            self._handle._ready = False
        logger.error("device %s failed: %s", self.serial, detail)

    # ------------------------------- Start -----------------------------------

    def _check_emulator_available(self) -> None:
        path = self._emulator_path
        if os.path.sep in path or (os.path.altsep and os.path.altsep in path):
            if os.path.isfile(path):
                return
        elif shutil.which(path):
            return
        raise ToolMissingError(path, hint="emulator binary not found")

    def start(self) -> DeviceHandle:
        """Spawn the emulator process (idle/stopped -> starting -> booting)."""

        with self._lock:
            if self._state not in (DeviceState.IDLE, DeviceState.STOPPED):
                raise HarnessError(
                    f"cannot start device {self.serial} from state {self._state.value}"
                )
            _acquire_lease(self.serial, self)
            self._set_state(DeviceState.STARTING)
            try:
                self._check_emulator_available()
                invocation = CommandInvocation(
                    executable=self._emulator_path, args=tuple(self.launch_args())
                )
                process = self._runner.spawn(invocation)
            except Exception as e:
                _release_lease(self.serial, self)
                self._fail(f"emulator spawn failed: {e}")
                raise
            self._handle = DeviceHandle(name=self._avd_name, port=self._port, process=process)
            self._set_state(DeviceState.BOOTING)
            logger.info("started %s on %s (pid=%s)", self._avd_name, self.serial, process.pid)

        if self._settle_after_start_s > 0:
            self._sleep(self._settle_after_start_s)
        if not process.is_alive():
            self._fail(f"emulator process exited during startup (rc={process.returncode})")
            tail = process.output_tail()
            if tail:
                logger.error("emulator output:\n%s", "\n".join(tail[-20:]))
            raise HarnessError(self.failure_detail)
        return self._handle

    def adopt(self) -> DeviceHandle:
        """Take over an emulator that is already running (no process of our own)."""

        with self._lock:
            if self._state not in (DeviceState.IDLE, DeviceState.STOPPED):
                raise HarnessError(
                    f"cannot adopt device {self.serial} from state {self._state.value}"
                )
            _acquire_lease(self.serial, self)
            self._handle = DeviceHandle(
                name=self._avd_name,
                port=self._port,
                external=True,
                liveness=self._adopted_online,
            )
            self._set_state(DeviceState.BOOTING)
            logger.info("adopted already-running device %s", self.serial)
            return self._handle

    # ------------------------------- Readiness -------------------------------

    def _adopted_online(self) -> bool:
        try:
            return self._bridge.is_online(self.serial)
        except CommandTimeoutError:
            return False

    def _probe_ready(self) -> bool:
        handle = self._handle
        if handle is None or (not handle.external and not handle.is_live()):
            rc = handle.process.returncode if handle is not None and handle.process else None
            raise PollAbort(f"device process exited before boot completed (rc={rc})")
        try:
            if self._bridge.device_states().get(self.serial) != ONLINE_STATE:
                return False
            if self._wait_boot_completed:
                return self._bridge.getprop(self.serial, "sys.boot_completed") == "1"
            return True
        except CommandTimeoutError as e:
            logger.debug("readiness probe timed out: %s", e)
            return False

    def wait_until_ready(self) -> PollResult:
        """Poll until ready (booting -> ready) or fail on timeout/error."""

        with self._lock:
            if self._state is DeviceState.READY and self._handle is not None and self._handle.ready:
                return PollResult(PollStatus.READY, 0.0, 0)
            if self._state is not DeviceState.BOOTING:
                raise HarnessError(
                    f"cannot wait for device {self.serial} in state {self._state.value}"
                )

        logger.info("waiting for %s to boot (timeout %.0fs)", self.serial, self._boot_timeout_s)
        result = poll_until(
            self._probe_ready,
            timeout_s=self._boot_timeout_s,
            interval_s=self._poll_interval_s,
            clock=self._clock,
            sleep=self._sleep,
            on_wait=lambda elapsed, total: logger.info(
                "waiting for %s... (%.0fs/%.0fs)", self.serial, elapsed, total
            ),
        )

        with self._lock:
            handle = self._handle
            if self._state is not DeviceState.BOOTING or handle is None or handle.invalidated:
                # Stopped (or failed) while polling; the device is gone either way.
                logger.info(
                    "device %s left booting while waiting (%s); dropping %s poll result",
                    self.serial,
                    self._state.value,
                    result.status.value,
                )
                return PollResult(
                    PollStatus.ERROR,
                    result.elapsed_s,
                    result.attempts,
                    detail=f"device {self._state.value} while waiting for boot",
                )
            if result.status is PollStatus.READY:
                handle._ready = True
                self._set_state(DeviceState.READY)
                logger.info("device %s ready after %.1fs", self.serial, result.elapsed_s)
            elif result.status is PollStatus.TIMEOUT:
                self._fail(f"boot timeout after {result.elapsed_s:.1f}s")
            else:
                self._fail(f"boot error: {result.detail}")
        return result

    def health_check(self) -> bool:
        """True when the handle is ready and the bridge still reports it online."""

        handle = self._handle
        if handle is None or not handle.ready:
            return False
        try:
            return self._bridge.is_online(self.serial)
        except CommandTimeoutError:
            return False

    # ------------------------------- Stop ------------------------------------

    def stop(self) -> DeviceStopResult:
        """Kill the device; safe to call repeatedly (later calls are no-ops)."""

        with self._lock:
            handle = self._handle
            if handle is None or handle.invalidated:
                return DeviceStopResult(attempted=False, detail="no running device")

            failed = self._state is DeviceState.FAILED
            if not failed:
                self._set_state(DeviceState.STOPPING)

            kill_ok: Optional[bool] = None
            if not handle.external or self._stop_adopted:
                try:
                    kill_ok = self._bridge.emu_kill(handle.serial)
                except Exception as e:
                    kill_ok = False
                    logger.warning("emu kill for %s raised: %s", handle.serial, e)

            terminated: Optional[bool] = None
            if handle.process is not None:
                try:
                    terminated = handle.process.terminate(grace_s=self._stop_grace_s)
                except Exception as e:
                    terminated = False
                    logger.warning("terminate of pid=%s raised: %s", handle.pid, e)

            handle._ready = False
            handle._invalidated = True
            _release_lease(self.serial, self)
            if not failed:
                self._set_state(DeviceState.STOPPED)

            still_alive = handle.process is not None and (
                handle.process.is_alive() or handle.process.group_alive()
            )
            orphan = still_alive or (kill_ok is False and terminated is False)
            detail = ""
            if orphan:
                detail = f"device process may be orphaned (pid={handle.pid})"
                logger.error("%s after stop of %s", detail, handle.serial)
            else:
                logger.info("device %s stopped", handle.serial)
            return DeviceStopResult(
                attempted=True,
                kill_command_ok=kill_ok,
                process_terminated=terminated,
                orphan_risk=orphan,
                detail=detail,
            )

    def __enter__(self) -> "VirtualDeviceSupervisor":
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()
