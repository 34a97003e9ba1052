from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from device_harness.config import load_pipeline_config
from device_harness.errors import ConfigError
from device_harness.pipeline.pipeline import Pipeline
from device_harness.pipeline.types import Report

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_CONFIG_ERROR = 2

_SKIP_FLAGS = ("skip_build", "skip_start_device", "skip_install", "skip_launch", "skip_checks")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build, boot, install, launch and check an app on an emulator."
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=os.environ.get("DH_CONFIG"),
        help="Pipeline config (.yaml/.yml/.json). Default: $DH_CONFIG.",
    )
    parser.add_argument(
        "--report_dir",
        type=str,
        default=os.environ.get("DH_REPORT_DIR"),
        help="Override output.report_dir. Default: $DH_REPORT_DIR.",
    )
    parser.add_argument("--adb_path", type=str, default=os.environ.get("DH_ADB_PATH"))
    parser.add_argument(
        "--emulator_path", type=str, default=os.environ.get("DH_EMULATOR_PATH")
    )
    for flag in _SKIP_FLAGS:
        parser.add_argument(f"--{flag}", action="store_true")
    parser.add_argument(
        "--continuous",
        action="store_true",
        help="Repeat the run every --interval_s seconds until interrupted.",
    )
    parser.add_argument("--interval_s", type=float, default=300.0)
    parser.add_argument("--max_runs", type=int, default=None)
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level.")
    return parser


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    out: Dict[str, Any] = {flag: True for flag in _SKIP_FLAGS if getattr(args, flag)}
    if args.report_dir:
        out["report_dir"] = args.report_dir
    if args.adb_path:
        out["adb_path"] = args.adb_path
    if args.emulator_path:
        out["emulator_path"] = args.emulator_path
    return out


def _print_report(report: Report) -> None:
    status = "SUCCESS" if report.succeeded else "FAILURE"
    print(f"{status}: {report.passed_count} passed, {report.failed_count} failed")
    if report.terminal_error:
        print(f"error: {report.terminal_error}")
    if report.report_path is not None:
        print(f"Wrote report to {report.report_path}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s",
    )

    if args.config is None:
        parser.error("--config is required (or set DH_CONFIG)")
    if args.max_runs is not None and args.max_runs < 1:
        parser.error("--max_runs must be >= 1")

    try:
        config = load_pipeline_config(args.config, overrides=_overrides(args))
    except (ConfigError, FileNotFoundError) as e:
        logger.error("invalid config %s:\n%s", args.config, e)
        return EXIT_CONFIG_ERROR

    pipeline = Pipeline(config)

    if not args.continuous:
        report = pipeline.run_once()
        _print_report(report)
        return EXIT_OK if report.succeeded else EXIT_RUN_FAILED

    stop_event = threading.Event()

    def _request_stop(signum: int, _frame: object) -> None:
        logger.info("signal %s received; stopping after the current run", signum)
        stop_event.set()

    previous = signal.signal(signal.SIGTERM, _request_stop)
    try:
        reports = pipeline.run_continuously(
            args.interval_s,
            max_runs=args.max_runs,
            stop_event=stop_event,
            on_report=_print_report,
        )
    except KeyboardInterrupt:
        print()
        pipeline.stop_device_if_running()
        return EXIT_RUN_FAILED
    finally:
        signal.signal(signal.SIGTERM, previous)
    return EXIT_OK if reports and all(r.succeeded for r in reports) else EXIT_RUN_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
