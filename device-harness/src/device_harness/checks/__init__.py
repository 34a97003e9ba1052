"""Live checks run against the launched app."""

from __future__ import annotations

from device_harness.checks.suite import CheckSuite

__all__ = [
    "CheckSuite",
]
