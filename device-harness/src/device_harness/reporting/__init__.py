"""Report rendering and writing."""

from __future__ import annotations

from device_harness.reporting.text_report import (
    ReportGenerator,
    render_report_text,
    report_stem,
    write_report,
)

__all__ = [
    "ReportGenerator",
    "render_report_text",
    "report_stem",
    "write_report",
]
