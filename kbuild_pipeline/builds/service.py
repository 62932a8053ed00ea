"""Pipeline orchestration service.

This module provides the high-level run API:
- PipelineOrchestrator.run(): main entry point for one pipeline run
- Target validation and toolchain checks before anything is built
- Workspace and source preparation, version resolution
- Parallel per-target stage execution with fail-fast or best-effort policy
- Manifest aggregation from the targets that published

Run states: init -> source_prepared -> aggregated -> done, or aborted.
Target states: pending -> building -> published | failed.
"""

from __future__ import annotations

import logging
import shlex
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field

from kbuild_pipeline.builds.artifacts import (
    ArtifactPublisher,
    ArtifactStore,
    CommandArtifactStore,
    LocalArtifactStore,
)
from kbuild_pipeline.builds.manifest import (
    aggregate,
    fragment_path,
    load_fragment,
    remove_fragment,
    write_manifest,
)
from kbuild_pipeline.builds.runner import (
    UNEXPECTED_ERROR,
    Stage,
    StageContext,
    first_failure,
    run_stages,
)
from kbuild_pipeline.builds.stages import default_stages
from kbuild_pipeline.builds.toolchain import Toolchain, check_tools, compute_parallelism
from kbuild_pipeline.builds.workspace import (
    LOCK_DIR_NAME,
    META_DIR_NAME,
    layout_for,
    prepare_workspace,
)
from kbuild_pipeline.config import Settings
from kbuild_pipeline.errors import ConfigError, PipelineError
from kbuild_pipeline.source import prepare_source
from kbuild_pipeline.targets import TargetSpec, parse_targets
from kbuild_pipeline.types import (
    ArtifactRecord,
    RunMode,
    RunState,
    StageResult,
    TargetState,
)
from kbuild_pipeline.version import (
    KernelVersion,
    parse_changelog_entry,
    read_changelog,
    version_from_entry,
)

logger = logging.getLogger(__name__)

MANIFEST_FILE_NAME = "kernel_meta.bzl"


class TargetOutcome(BaseModel):
    """Outcome of one target within a run."""

    target: str
    arch: str
    flavour: str
    state: TargetState = TargetState.PENDING
    version: str | None = None
    stages: list[StageResult] = Field(default_factory=list)
    records: list[ArtifactRecord] = Field(default_factory=list)
    error: str | None = None
    error_code: str | None = None
    failed_stage: str | None = None


class PipelineResult(BaseModel):
    """Summary of a pipeline run."""

    run_state: RunState
    mode: RunMode
    started_at: datetime
    finished_at: datetime | None = None
    targets: list[TargetOutcome] = Field(default_factory=list)
    manifest_path: str | None = None

    @property
    def succeeded(self) -> int:
        return sum(1 for t in self.targets if t.state == TargetState.PUBLISHED)

    @property
    def failed(self) -> int:
        return sum(1 for t in self.targets if t.state == TargetState.FAILED)

    @property
    def success(self) -> bool:
        return self.run_state == RunState.DONE and self.failed == 0


def create_store(settings: Settings, workspace: Path) -> ArtifactStore:
    """Create the artifact-store client selected by settings."""
    if settings.artifact_store == "local":
        return LocalArtifactStore(settings.local_store_dir or workspace / "astore")
    return CommandArtifactStore(
        upload_command=settings.astore_command,
        exists_command=settings.astore_exists_command,
        timeout=settings.upload_timeout,
    )


class PipelineOrchestrator:
    """Drives one build-and-publish run over a set of targets.

    Args:
        settings: Effective settings for the run.
        kernel_repo: Local kernel tree or git URL.
        target_specs: ``"<arch>,<flavour>"`` strings.
        toolchain: External tool wrapper (default: Toolchain).
        store: Artifact store (default: selected by settings).
        stages_factory: Builds the stage list for a target.
        cpu_count: Host CPU count override for the compile job budget.
    """

    def __init__(
        self,
        settings: Settings,
        kernel_repo: str,
        target_specs: Sequence[str],
        toolchain: Toolchain | None = None,
        store: ArtifactStore | None = None,
        stages_factory: Callable[[TargetSpec], Sequence[Stage]] | None = None,
        cpu_count: int | None = None,
    ) -> None:
        self.settings = settings
        self.kernel_repo = kernel_repo
        self.target_specs = list(target_specs)
        self.toolchain = toolchain or Toolchain(timeout=settings.build_timeout)
        self.store = store
        self.stages_factory = stages_factory or (lambda _target: default_stages())
        self.mode = RunMode(settings.run_mode)
        self.parallelism = compute_parallelism(cpu_count)

        self.state = RunState.INIT
        self.targets: list[TargetSpec] = []
        self.versions: dict[TargetSpec, KernelVersion] = {}
        self._abort = threading.Event()

    def _transition(self, state: RunState) -> None:
        logger.info("Run state: %s -> %s", self.state.value, state.value)
        self.state = state

    def _required_tools(self) -> list[str]:
        tools = list(self.toolchain.required_tools)
        if not Path(self.kernel_repo).expanduser().is_dir():
            tools.append("git")
        if self.store is None and self.settings.artifact_store == "command":
            tools.append(shlex.split(self.settings.astore_command)[0])
        return tools

    def initialize(self) -> None:
        """Validate targets, settings and tools. Nothing is built yet.

        Raises:
            ConfigError: On invalid targets, settings, or missing tools.
        """
        self.targets = parse_targets(self.target_specs)
        if self.settings.clean and self.settings.reuse:
            raise ConfigError("Artifact reuse requires a preserved workspace, not --clean")
        check_tools(self._required_tools())
        logger.info(
            "Validated %d target(s): %s",
            len(self.targets),
            ", ".join(t.name for t in self.targets),
        )

    def prepare(self) -> Path:
        """Prepare workspace and source tree, resolve versions.

        Returns:
            The kernel source directory.

        Raises:
            ConfigError: If the workspace or source tree is unusable.
            VersionParseError: If no version can be derived.
        """
        self.workspace = prepare_workspace(self.settings.build_root, clean=self.settings.clean)
        source_dir = prepare_source(
            self.kernel_repo,
            self.settings.branch,
            self.workspace,
            changelog_path=self.settings.changelog_path,
            timeout=self.settings.build_timeout,
        )

        entry = parse_changelog_entry(read_changelog(source_dir, self.settings.changelog_path))
        for target in self.targets:
            self.versions[target] = version_from_entry(
                entry, self.settings.version_suffix, target.flavour
            )
            logger.info("Kernel version for %s: %s", target.name, self.versions[target])

        if self.store is None:
            self.store = create_store(self.settings, self.workspace)
        self.publisher = ArtifactPublisher(
            self.store,
            astore_root=self.settings.astore_root,
            branch=self.settings.branch,
            allow_reuse=self.settings.reuse and not self.settings.clean,
        )
        return source_dir

    def _should_abort(self) -> bool:
        return self._abort.is_set()

    def run_target(self, target: TargetSpec, source_dir: Path) -> TargetOutcome:
        """Build and publish one target.

        Never raises: every failure of the target is reported on its outcome.
        """
        version = self.versions[target]
        outcome = TargetOutcome(
            target=target.name,
            arch=target.arch.value,
            flavour=target.flavour,
            version=str(version),
        )

        if self._abort.is_set():
            outcome.state = TargetState.FAILED
            outcome.error = "Not started: run aborted after another target failed"
            outcome.error_code = "aborted"
            return outcome

        outcome.state = TargetState.BUILDING
        logger.info("[%s] Building %s", target.name, version)

        try:
            self._build(target, version, source_dir, outcome)
        except Exception as e:
            logger.exception("[%s] Target setup failed", target.name)
            if isinstance(e, PipelineError):
                code = e.code
            elif isinstance(e, OSError):
                code = "os_error"
            else:
                code = UNEXPECTED_ERROR
            self._mark_failed(outcome, f"{type(e).__name__}: {e}", code)
        return outcome

    def _mark_failed(
        self,
        outcome: TargetOutcome,
        error: str | None,
        code: str | None,
        stage: str | None = None,
    ) -> None:
        outcome.state = TargetState.FAILED
        outcome.error = error
        outcome.error_code = code
        outcome.failed_stage = stage
        if self.mode == RunMode.FAIL_FAST:
            self._abort.set()

    def _build(
        self,
        target: TargetSpec,
        version: KernelVersion,
        source_dir: Path,
        outcome: TargetOutcome,
    ) -> None:
        layout = layout_for(self.workspace, target)
        layout.create()
        remove_fragment(layout.meta_dir, target)

        context = StageContext(
            target=target,
            version=version,
            layout=layout,
            source_dir=source_dir,
            parallelism=self.parallelism,
            toolchain=self.toolchain,
            publisher=self.publisher,
            label=self.settings.label,
            lock_dir=self.workspace / LOCK_DIR_NAME,
            lock_timeout=self.settings.lock_timeout,
        )
        should_abort = self._should_abort if self.mode == RunMode.FAIL_FAST else None
        outcome.stages = run_stages(context, self.stages_factory(target), should_abort)

        failure = first_failure(outcome.stages)
        if failure is not None:
            logger.error("[%s] Failed at %s: %s", target.name, failure.stage_name, failure.error)
            self._mark_failed(outcome, failure.error, failure.error_code, failure.stage_name)
        else:
            outcome.state = TargetState.PUBLISHED
            outcome.records = list(context.records)
            logger.info("[%s] Published %d artifact(s)", target.name, len(context.records))

    def build_targets(self, source_dir: Path) -> list[TargetOutcome]:
        """Run every target, bounded by ``max_parallel_targets``."""
        workers = min(self.settings.max_parallel_targets, len(self.targets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="kbuild") as executor:
            futures = [
                executor.submit(self.run_target, target, source_dir) for target in self.targets
            ]
            return [f.result() for f in futures]

    def aggregate_manifest(self, outcomes: Sequence[TargetOutcome]) -> Path:
        """Merge the fragments of published targets into the manifest file.

        Raises:
            ManifestConflictError: If fragments disagree.
        """
        meta_dir = self.workspace / META_DIR_NAME
        fragments = [
            load_fragment(fragment_path(meta_dir, target))
            for target, outcome in zip(self.targets, outcomes)
            if outcome.state == TargetState.PUBLISHED
        ]
        manifest = aggregate(fragments)
        return write_manifest(manifest, self.workspace / MANIFEST_FILE_NAME)

    def run(self) -> PipelineResult:
        """Execute the run.

        Returns:
            PipelineResult; ``success`` is False when any target failed.

        Raises:
            ConfigError: Before any build, on invalid configuration.
            VersionParseError: When the changelog yields no version.
            ManifestConflictError: When fragments disagree.
        """
        result = PipelineResult(
            run_state=self.state,
            mode=self.mode,
            started_at=datetime.now(timezone.utc),
        )

        try:
            self.initialize()
            source_dir = self.prepare()
        except PipelineError:
            self._transition(RunState.ABORTED)
            raise
        self._transition(RunState.SOURCE_PREPARED)

        result.targets = self.build_targets(source_dir)
        failed = [t for t in result.targets if t.state == TargetState.FAILED]

        if failed and self.mode == RunMode.FAIL_FAST:
            self._transition(RunState.ABORTED)
        else:
            try:
                result.manifest_path = str(self.aggregate_manifest(result.targets))
            except PipelineError:
                self._transition(RunState.ABORTED)
                raise
            self._transition(RunState.AGGREGATED)
            self._transition(RunState.DONE)

        result.run_state = self.state
        result.finished_at = datetime.now(timezone.utc)
        logger.info(
            "Run finished (%s): %d published, %d failed",
            self.state.value,
            result.succeeded,
            result.failed,
        )
        return result


__all__ = [
    "MANIFEST_FILE_NAME",
    "PipelineOrchestrator",
    "PipelineResult",
    "TargetOutcome",
    "create_store",
]
