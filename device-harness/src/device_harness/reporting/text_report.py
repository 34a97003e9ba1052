"""Durable run reports.

One plain-text report per run, named with the run's timestamp, plus a JSON
sidecar with the same stem holding the same data. Writing is atomic per file
(tmp file, then replace). A write failure is logged and reported as ``None``;
it never changes whether the run passed.
"""

from __future__ import annotations

import datetime
import json
import logging
from pathlib import Path
from typing import Callable, List, Optional

from device_harness.pipeline.types import WORK_STAGES, Report

logger = logging.getLogger(__name__)

REPORT_PREFIX = "device_test_report"
_RULE = "=" * 60


def report_stem(when: Optional[datetime.datetime] = None) -> str:
    when = when or datetime.datetime.now()
    return f"{REPORT_PREFIX}_{when.strftime('%Y%m%d_%H%M%S')}"


def _fmt_rate(rate: Optional[float]) -> str:
    return "n/a" if rate is None else f"{rate:.1f}%"


def render_report_text(report: Report) -> str:
    lines: List[str] = [_RULE, "DEVICE TEST REPORT", _RULE]

    lines.append(f"Run id: {report.run_id}")
    lines.append(f"Started: {report.started_at}")
    lines.append(f"Duration: {report.duration_s:.1f}s")
    for key in sorted(report.metadata):
        value = report.metadata[key]
        if value is None:
            continue
        lines.append(f"{key}: {value}")
    lines.append(f"Result: {'SUCCESS' if report.succeeded else 'FAILURE'}")
    if report.terminal_error:
        lines.append(f"Terminal error: {report.terminal_error}")

    lines += ["", "Stages:"]
    for name in WORK_STAGES:
        record = report.stages[name]
        line = f"  {name.value:<14} {record.status.value}"
        if record.outcome is not None:
            line += f" ({record.outcome.duration_s:.1f}s)"
            if record.outcome.detail:
                line += f" - {record.outcome.detail}"
        lines.append(line)

    lines += ["", "Test results:"]
    if not report.results:
        lines.append("  (none)")
    for i, r in enumerate(report.results, start=1):
        lines.append(
            f"  {i}. {r.name}: {'PASS' if r.passed else 'FAIL'} "
            f"score={r.score:.1f} [{r.timestamp}]"
        )
        if r.detail:
            lines.append(f"     {r.detail}")

    lines += [
        "",
        "Summary:",
        f"  Passed: {report.passed_count}",
        f"  Failed: {report.failed_count}",
        f"  Success rate: {_fmt_rate(report.success_rate)}",
        f"  Overall score: {report.overall_score:.1f}",
        _RULE,
    ]
    return "\n".join(lines) + "\n"


def _write_atomic(path: Path, text: str) -> None:
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(text, encoding="utf-8")
    tmp_path.replace(path)


def write_report(report: Report, out_dir: Path, *, stem: Optional[str] = None) -> Optional[Path]:
    """Write ``<stem>.txt`` and ``<stem>.json``; return the text path or None."""

    out_dir = Path(out_dir)
    stem = stem or report_stem()
    try:
        out_dir.mkdir(parents=True, exist_ok=True)
        if (out_dir / f"{stem}.txt").exists():
            stem = f"{stem}_{report.run_id}"
        txt_path = out_dir / f"{stem}.txt"
        _write_atomic(txt_path, render_report_text(report))
    except OSError as e:
        logger.error("could not write report to %s: %s", out_dir, e)
        return None

    json_path = out_dir / f"{stem}.json"
    try:
        payload = report.to_dict()
        payload["report_path"] = str(txt_path)
        _write_atomic(json_path, json.dumps(payload, indent=2, ensure_ascii=False) + "\n")
    except OSError as e:
        logger.error("could not write report summary %s: %s", json_path, e)

    logger.info("wrote report to %s", txt_path)
    return txt_path


class ReportGenerator:
    """Seals a finished Report and writes it under ``out_dir``."""

    def __init__(
        self,
        out_dir: str | Path,
        *,
        now: Callable[[], datetime.datetime] = datetime.datetime.now,
    ) -> None:
        self.out_dir = Path(out_dir)
        self._now = now

    def generate(self, report: Report) -> Optional[Path]:
        report.seal()
        path = write_report(report, self.out_dir, stem=report_stem(self._now()))
        report.report_path = path
        return path
