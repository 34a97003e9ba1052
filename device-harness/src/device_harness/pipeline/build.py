"""Build providers.

The pipeline treats the build as an opaque action: ``build()`` returns
whether it worked and where the installable artifact is. How the artifact
gets made (Gradle, a game engine in batch mode, a CI download) is the
provider's business.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import NamedTuple, Optional, Protocol, Sequence

from device_harness.config import PipelineConfig
from device_harness.runtime.commands import CommandInvocation, CommandRunner

logger = logging.getLogger(__name__)

BUILD_OUTPUT_TAIL_CHARS = 2000


class BuildResult(NamedTuple):
    success: bool
    artifact_path: str
    detail: str = ""


class BuildProvider(Protocol):
    def build(self) -> BuildResult: ...


class PrebuiltArtifactProvider:
    """The artifact already exists (built elsewhere); just confirm it."""

    def __init__(self, artifact_path: str | Path) -> None:
        self._artifact_path = Path(artifact_path)

    def build(self) -> BuildResult:
        if self._artifact_path.is_file():
            return BuildResult(True, str(self._artifact_path))
        detail = f"artifact not found: {self._artifact_path}"
        return BuildResult(False, str(self._artifact_path), detail)


class CommandBuildProvider:
    """Run a build command, then expect the artifact at a known path."""

    def __init__(
        self,
        *,
        runner: CommandRunner,
        command: Sequence[str],
        artifact_path: str | Path,
        cwd: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ) -> None:
        if not command:
            raise ValueError("build command must not be empty")
        self._runner = runner
        self._invocation = CommandInvocation.of(*command, cwd=cwd)
        self._artifact_path = Path(artifact_path)
        self._timeout_s = timeout_s

    def build(self) -> BuildResult:
        logger.info("building: %s", " ".join(self._invocation.argv()))
        res = self._runner.run(self._invocation, timeout_s=self._timeout_s)
        if not res.ok():
            tail = res.combined_output()[-BUILD_OUTPUT_TAIL_CHARS:]
            return BuildResult(
                False,
                str(self._artifact_path),
                f"build command exited with rc={res.returncode}\n{tail}".rstrip(),
            )
        if not self._artifact_path.is_file():
            return BuildResult(
                False,
                str(self._artifact_path),
                f"build command succeeded but artifact not found: {self._artifact_path}",
            )
        logger.info("built %s in %.1fs", self._artifact_path, res.duration_s)
        return BuildResult(True, str(self._artifact_path))


def build_provider_from_config(config: PipelineConfig, *, runner: CommandRunner) -> BuildProvider:
    if config.build_command:
        return CommandBuildProvider(
            runner=runner,
            command=config.build_command,
            artifact_path=config.artifact_path,
            cwd=config.build_cwd,
            timeout_s=config.stage_timeout("build"),
        )
    return PrebuiltArtifactProvider(config.artifact_path)
