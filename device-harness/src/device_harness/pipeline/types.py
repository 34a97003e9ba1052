from __future__ import annotations

import datetime
import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.datetime.now().astimezone().isoformat(timespec="seconds")


def _clamp_score(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


class StageName(str, Enum):
    BUILD = "build"
    START_DEVICE = "start_device"
    WAIT_READY = "wait_ready"
    INSTALL = "install"
    LAUNCH = "launch"
    RUN_CHECKS = "run_checks"
    GENERATE_REPORT = "generate_report"


STAGE_ORDER: tuple[StageName, ...] = tuple(StageName)

# Report writing is bookkeeping, not part of what a run is judged on.
WORK_STAGES: tuple[StageName, ...] = tuple(
    s for s in STAGE_ORDER if s is not StageName.GENERATE_REPORT
)

# A failure in any of these aborts the run; check failures are data.
SETUP_STAGES = frozenset(
    {
        StageName.BUILD,
        StageName.START_DEVICE,
        StageName.WAIT_READY,
        StageName.INSTALL,
        StageName.LAUNCH,
    }
)


class StageStatus(str, Enum):
    PASSED = "pass"
    FAILED = "fail"
    SKIPPED = "skipped"
    NOT_RUN = "not-run"


@dataclass(frozen=True)
class StageOutcome:
    succeeded: bool
    score: float = 0.0
    detail: str = ""
    duration_s: float = 0.0
    timed_out: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "score", _clamp_score(self.score))

    @classmethod
    def passed(cls, detail: str = "", *, score: float = 100.0) -> "StageOutcome":
        return cls(succeeded=True, score=score, detail=detail)

    @classmethod
    def failed(cls, detail: str = "", *, score: float = 0.0) -> "StageOutcome":
        return cls(succeeded=False, score=score, detail=detail)


@dataclass(frozen=True)
class Stage:
    name: str
    action: Callable[[], StageOutcome]
    timeout_s: Optional[float] = None


@dataclass(frozen=True)
class TestResult:
    __test__ = False  # not a pytest test class

    name: str
    passed: bool
    score: float
    detail: str = ""
    timestamp: str = field(default_factory=_now_iso)

    def __post_init__(self) -> None:
        object.__setattr__(self, "score", _clamp_score(self.score))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "score": self.score,
            "detail": self.detail,
            "timestamp": self.timestamp,
        }


@dataclass
class StageRecord:
    name: StageName
    status: StageStatus = StageStatus.NOT_RUN
    outcome: Optional[StageOutcome] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"name": self.name.value, "status": self.status.value}
        if self.outcome is not None:
            out.update(
                {
                    "score": self.outcome.score,
                    "detail": self.outcome.detail,
                    "duration_s": round(self.outcome.duration_s, 3),
                    "timed_out": self.outcome.timed_out,
                }
            )
        return out


@dataclass
class Report:
    """Everything one pipeline run produced.

    Results are append-only until the report is sealed; a sealed report
    (after a run-checks timeout, or once rendered) drops late results from
    abandoned checks instead of changing after the fact.
    """

    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: str = field(default_factory=_now_iso)
    stages: Dict[StageName, StageRecord] = field(
        default_factory=lambda: {name: StageRecord(name) for name in STAGE_ORDER}
    )
    results: List[TestResult] = field(default_factory=list)
    duration_s: float = 0.0
    terminal_error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    report_path: Optional[Path] = None
    _sealed: bool = field(default=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    # ------------------------------- Mutation --------------------------------

    def add_result(self, result: TestResult) -> bool:
        with self._lock:
            if self._sealed:
                logger.warning("dropping late result %r: report already sealed", result.name)
                return False
            self.results.append(result)
            return True

    def seal(self) -> None:
        with self._lock:
            self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def record_stage(
        self,
        name: StageName,
        status: StageStatus,
        outcome: Optional[StageOutcome] = None,
    ) -> None:
        self.stages[name] = StageRecord(name=name, status=status, outcome=outcome)

    def add_error(self, message: str) -> None:
        message = str(message).strip()
        if not message:
            return
        if self.terminal_error:
            self.terminal_error = f"{self.terminal_error}; {message}"
        else:
            self.terminal_error = message

    # ------------------------------- Queries ---------------------------------

    def stage_status(self, name: StageName) -> StageStatus:
        return self.stages[name].status

    @property
    def passed_count(self) -> int:
        return sum(1 for r in self.results if r.passed)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if not r.passed)

    @property
    def success_rate(self) -> Optional[float]:
        """passed / (passed + failed) as a percentage; None without results."""

        total = len(self.results)
        if not total:
            return None
        return self.passed_count / total * 100.0

    @property
    def overall_score(self) -> float:
        if not self.results:
            return 0.0
        return sum(r.score for r in self.results) / len(self.results)

    @property
    def succeeded(self) -> bool:
        if self.terminal_error:
            return False
        if any(self.stages[s].status is StageStatus.FAILED for s in WORK_STAGES):
            return False
        return self.failed_count == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "duration_s": round(self.duration_s, 3),
            "succeeded": self.succeeded,
            "terminal_error": self.terminal_error,
            "metadata": dict(self.metadata),
            "stages": [self.stages[name].to_dict() for name in WORK_STAGES],
            "results": [r.to_dict() for r in self.results],
            "summary": {
                "passed": self.passed_count,
                "failed": self.failed_count,
                "success_rate": self.success_rate,
                "overall_score": self.overall_score,
            },
        }
