"""Stage runner for one target.

This module handles:
- The Stage abstraction (a named step operating on a StageContext)
- Running stages strictly in declared order
- Halting on the first failure and marking later stages skipped
- Recording per-stage status and timestamps

Stages communicate only through documented keys in
``StageContext.outputs`` so each stage can be tested on its own.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from kbuild_pipeline.errors import PipelineError, StageError
from kbuild_pipeline.types import ArtifactRecord, StageResult, StageStatus

if TYPE_CHECKING:
    from kbuild_pipeline.builds.artifacts import ArtifactPublisher
    from kbuild_pipeline.builds.toolchain import Toolchain
    from kbuild_pipeline.builds.workspace import TargetLayout
    from kbuild_pipeline.targets import TargetSpec
    from kbuild_pipeline.version import KernelVersion

logger = logging.getLogger(__name__)

ABORTED_MESSAGE = "Run aborted after another target failed"
UNEXPECTED_ERROR = "unexpected_error"


@dataclass
class StageContext:
    """Per-target state shared by the stages of one target.

    Attributes:
        target: Target being built.
        version: Resolved kernel version for the target's flavour.
        layout: The target's workspace directories.
        source_dir: Kernel source tree.
        parallelism: Job budget for the compiler.
        toolchain: External tool wrapper.
        publisher: Artifact publisher.
        label: Manifest label.
        lock_dir: Directory for locks guarding the shared source tree.
        lock_timeout: Wait limit for those locks in seconds (None = block).
        outputs: Paths produced by earlier stages, keyed by output name.
        records: Artifacts published for this target.
    """

    target: TargetSpec
    version: KernelVersion
    layout: TargetLayout
    source_dir: Path
    parallelism: int
    toolchain: Toolchain
    publisher: ArtifactPublisher
    label: str
    lock_dir: Path
    lock_timeout: float | None = None
    outputs: dict[str, Path] = field(default_factory=dict)
    records: list[ArtifactRecord] = field(default_factory=list)

    def require_output(self, key: str) -> Path:
        """Return an earlier stage's output or fail the current stage."""
        path = self.outputs.get(key)
        if path is None:
            raise StageError(f"Missing required input {key!r} for {self.target.name}")
        return path


@dataclass(frozen=True)
class Stage:
    """A named build step.

    ``execute`` returns normally on success and raises a PipelineError
    (usually StageError) on failure.
    """

    name: str
    execute: Callable[[StageContext], None]


def run_stages(
    context: StageContext,
    stages: Sequence[Stage],
    should_abort: Callable[[], bool] | None = None,
) -> list[StageResult]:
    """Run stages for one target in order, halting on the first failure.

    Any exception raised by a stage fails that stage; unexpected ones are
    logged with their traceback and reported as ``unexpected_error``.

    Args:
        context: The target's stage context.
        stages: Stages in execution order.
        should_abort: Checked before each stage; when it returns True the
            remaining stages are skipped.

    Returns:
        One StageResult per stage, in declared order.
    """
    results = [StageResult(stage_name=s.name) for s in stages]
    target_name = context.target.name
    halted = False

    for stage, result in zip(stages, results):
        if halted:
            result.status = StageStatus.SKIPPED
            continue

        if should_abort is not None and should_abort():
            logger.warning("[%s] Skipping %s: run aborted", target_name, stage.name)
            result.status = StageStatus.SKIPPED
            result.error = ABORTED_MESSAGE
            halted = True
            continue

        result.status = StageStatus.RUNNING
        result.started_at = datetime.now(timezone.utc)
        logger.info("[%s] Stage %s started", target_name, stage.name)

        try:
            stage.execute(context)
        except PipelineError as e:
            if isinstance(e, StageError) and e.stage is None:
                e.stage = stage.name
            result.status = StageStatus.FAILED
            result.error = str(e)
            result.error_code = e.code
            halted = True
            logger.error("[%s] Stage %s failed: %s", target_name, stage.name, e)
        except OSError as e:
            result.status = StageStatus.FAILED
            result.error = f"{type(e).__name__}: {e}"
            result.error_code = "os_error"
            halted = True
            logger.error("[%s] Stage %s failed: %s", target_name, stage.name, e)
        except Exception as e:
            result.status = StageStatus.FAILED
            result.error = f"{type(e).__name__}: {e}"
            result.error_code = UNEXPECTED_ERROR
            halted = True
            logger.exception("[%s] Stage %s raised unexpectedly", target_name, stage.name)
        else:
            result.status = StageStatus.SUCCEEDED
            logger.info("[%s] Stage %s succeeded", target_name, stage.name)
        finally:
            result.ended_at = datetime.now(timezone.utc)

    return results


def first_failure(results: Sequence[StageResult]) -> StageResult | None:
    """Return the failed (or abort-skipped) stage that halted a target."""
    for result in results:
        if result.status == StageStatus.FAILED:
            return result
        if result.status == StageStatus.SKIPPED and result.error:
            return result
    return None


__all__ = [
    "ABORTED_MESSAGE",
    "UNEXPECTED_ERROR",
    "Stage",
    "StageContext",
    "first_failure",
    "run_stages",
]
