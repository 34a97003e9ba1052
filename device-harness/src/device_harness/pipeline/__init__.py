"""Stage model, stage execution and build providers.

``Pipeline`` itself lives in ``device_harness.pipeline.pipeline``; it is not
re-exported here because it depends on ``device_harness.checks``, which in
turn uses the result types defined in this package.
"""

from __future__ import annotations

from device_harness.pipeline.build import (
    BuildProvider,
    BuildResult,
    CommandBuildProvider,
    PrebuiltArtifactProvider,
    build_provider_from_config,
)
from device_harness.pipeline.executor import STAGE_TIMEOUT_DETAIL, StageExecutor
from device_harness.pipeline.types import (
    SETUP_STAGES,
    STAGE_ORDER,
    WORK_STAGES,
    Report,
    Stage,
    StageName,
    StageOutcome,
    StageRecord,
    StageStatus,
    TestResult,
)

__all__ = [
    "BuildProvider",
    "BuildResult",
    "CommandBuildProvider",
    "PrebuiltArtifactProvider",
    "Report",
    "SETUP_STAGES",
    "STAGE_ORDER",
    "STAGE_TIMEOUT_DETAIL",
    "Stage",
    "StageExecutor",
    "StageName",
    "StageOutcome",
    "StageRecord",
    "StageStatus",
    "TestResult",
    "WORK_STAGES",
    "build_provider_from_config",
]
