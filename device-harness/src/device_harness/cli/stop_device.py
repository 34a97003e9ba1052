"""Manual cleanup: kill the emulator a pipeline config points at.

Useful after a crashed run left an emulator behind. Only the console kill
(`adb -s <serial> emu kill`) is available here; the OS process belonged to
the crashed run.
"""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import Optional, Sequence

from device_harness.config import load_pipeline_config
from device_harness.errors import ConfigError, HarnessError
from device_harness.runtime.android.bridge import DeviceBridge
from device_harness.runtime.commands import CommandRunner

logger = logging.getLogger(__name__)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Stop the emulator used by a pipeline config.")
    parser.add_argument("--config", type=Path, default=os.environ.get("DH_CONFIG"))
    parser.add_argument("--adb_path", type=str, default=os.environ.get("DH_ADB_PATH"))
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s",
    )

    if args.config is None:
        parser.error("--config is required (or set DH_CONFIG)")
    overrides = {"adb_path": args.adb_path} if args.adb_path else None
    try:
        config = load_pipeline_config(args.config, overrides=overrides)
    except (ConfigError, FileNotFoundError) as e:
        logger.error("invalid config %s:\n%s", args.config, e)
        return 2

    runner = CommandRunner(default_timeout_s=config.command_timeout_s)
    bridge = DeviceBridge(runner=runner, adb_path=config.resolve_adb_path())
    serial = config.serial
    try:
        if serial not in bridge.list_devices():
            print(f"{serial} is not running")
            return 0
        ok = bridge.emu_kill(serial)
    except HarnessError as e:
        logger.error("could not stop %s: %s", serial, e)
        return 1

    if not ok:
        out = bridge.last_outcome.combined_output().strip() if bridge.last_outcome else ""
        logger.error("emu kill for %s failed: %s", serial, out)
        return 1
    print(f"Stopped {serial}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
