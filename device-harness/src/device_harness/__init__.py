"""device-harness: on-device test orchestration for an Android app under test.

A run builds an installable package, boots one emulator, installs and
launches the app, runs a battery of live checks against it and writes a
report. Every run ends with a report and a stopped device, whichever stage
failed.
"""

__version__ = "0.1.0"

__all__ = [
    "checks",
    "cli",
    "config",
    "errors",
    "pipeline",
    "reporting",
    "runtime",
]
