"""Tests for builds/service.py module.

Runs the orchestrator end to end over a fake toolchain and a local
artifact store.
"""

import tarfile
from pathlib import Path
from unittest.mock import patch

import pytest

from kbuild_pipeline.builds.artifacts import CommandArtifactStore, LocalArtifactStore
from kbuild_pipeline.builds.manifest import MANIFEST_HEADER
from kbuild_pipeline.builds.runner import Stage
from kbuild_pipeline.builds.service import (
    MANIFEST_FILE_NAME,
    PipelineOrchestrator,
    create_store,
)
from kbuild_pipeline.builds.stages import default_stages
from kbuild_pipeline.config import Settings
from kbuild_pipeline.errors import (
    ConfigError,
    InvalidTargetError,
    ManifestConflictError,
    VersionParseError,
)
from kbuild_pipeline.targets import Arch
from kbuild_pipeline.types import ArtifactKind, RunMode, RunState, StageStatus, TargetState


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        build_root=tmp_path / "ws",
        artifact_store="local",
        local_store_dir=tmp_path / "astore",
        version_suffix="-custom",
        max_parallel_targets=2,
    )


def orchestrator(settings, kernel_tree, targets, toolchain, **kwargs) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        settings,
        str(kernel_tree),
        targets,
        toolchain=toolchain,
        cpu_count=8,
        **kwargs,
    )


def manifest_lines(result) -> list[str]:
    return Path(result.manifest_path).read_text().splitlines()


class TestInit:
    """Validation before anything is built."""

    def test_invalid_target_rejected_before_any_stage(self, settings, kernel_tree, fake_toolchain):
        """No stage runs when any target is invalid."""
        executed: list[str] = []
        stages = [Stage("record", lambda ctx: executed.append(ctx.target.name))]
        orch = orchestrator(
            settings,
            kernel_tree,
            ["amd64,generic", "mips,generic"],
            fake_toolchain,
            stages_factory=lambda target: stages,
        )

        with pytest.raises(InvalidTargetError):
            orch.run()

        assert executed == []
        assert fake_toolchain.calls == []
        assert orch.state == RunState.ABORTED
        assert not settings.build_root.exists()

    def test_missing_tools(self, settings, kernel_tree, fake_toolchain):
        fake_toolchain.required_tools = ("definitely-not-a-real-tool-xyz",)
        with pytest.raises(ConfigError) as exc_info:
            orchestrator(settings, kernel_tree, ["amd64,generic"], fake_toolchain).run()
        assert exc_info.value.code == "missing_tool"

    def test_clean_with_reuse(self, settings, kernel_tree, fake_toolchain):
        settings = settings.model_copy(update={"clean": True, "reuse": True})
        with pytest.raises(ConfigError):
            orchestrator(settings, kernel_tree, ["amd64,generic"], fake_toolchain).run()

    def test_bad_changelog(self, settings, kernel_tree, fake_toolchain):
        (kernel_tree / "debian.master" / "changelog").write_text("garbage\n")
        orch = orchestrator(settings, kernel_tree, ["amd64,generic"], fake_toolchain)
        with pytest.raises(VersionParseError):
            orch.run()
        assert orch.state == RunState.ABORTED


class TestRun:
    """Full runs over the canonical stages."""

    def test_single_target(self, settings, kernel_tree, fake_toolchain):
        """Reference example: amd64,generic with suffix -custom."""
        result = orchestrator(settings, kernel_tree, ["amd64,generic"], fake_toolchain).run()

        assert result.success
        assert result.run_state == RunState.DONE
        (outcome,) = result.targets
        assert outcome.state == TargetState.PUBLISHED
        assert outcome.version == "5.4.0-100-custom-generic"
        assert [s.status for s in outcome.stages] == [StageStatus.SUCCEEDED] * 8
        assert len(outcome.records) == 3

        assert result.manifest_path == str(settings.build_root.resolve() / MANIFEST_FILE_NAME)
        lines = manifest_lines(result)
        assert lines[0] == MANIFEST_HEADER
        assert 'KERNEL_VERSION_AMD64_DEV_generic = "5.4.0-100-custom-generic"' in lines

        stored = settings.local_store_dir / "kernel" / "master" / "amd64-generic" / "bazel-archive"
        assert (stored / "kernel-5.4.0-100-custom-generic-bazel.tar.gz").is_file()

    def test_two_targets_distinct_keys(self, settings, kernel_tree, fake_toolchain):
        """Both targets publish and the manifest has one entry per target."""
        result = orchestrator(
            settings, kernel_tree, ["amd64,generic", "arm64,generic"], fake_toolchain
        ).run()

        assert result.success
        assert result.succeeded == 2
        text = Path(result.manifest_path).read_text()
        assert "KERNEL_TREE_AMD64_DEV_generic" in text
        assert "KERNEL_TREE_ARM64_DEV_generic" in text
        assert "amd64-generic/bazel-archive" in text
        assert "arm64-generic/bazel-archive" in text

    def test_outcomes_in_target_order(self, settings, kernel_tree, fake_toolchain):
        result = orchestrator(
            settings, kernel_tree, ["arm64,lowlatency", "amd64,generic"], fake_toolchain
        ).run()
        assert [t.target for t in result.targets] == ["arm64-lowlatency", "amd64-generic"]
        assert result.targets[0].version == "5.4.0-100-custom-lowlatency"

    def test_json_serializable(self, settings, kernel_tree, fake_toolchain):
        result = orchestrator(settings, kernel_tree, ["amd64,generic"], fake_toolchain).run()
        data = result.model_dump(mode="json")
        assert data["run_state"] == "done"
        assert data["mode"] == "fail-fast"
        assert data["targets"][0]["stages"][0]["status"] == "succeeded"
        assert data["targets"][0]["records"][0]["kind"] in {
            "bazel-archive",
            "apt-repo-archive",
            "package-archive",
        }

    def test_stale_fragment_removed(self, settings, kernel_tree, fake_toolchain, toolchain_factory):
        """A fragment from an earlier run never reaches the manifest."""
        settings = settings.model_copy(update={"run_mode": "best-effort", "reuse": True})
        first = orchestrator(settings, kernel_tree, ["arm64,generic"], fake_toolchain).run()
        assert first.success

        failing = toolchain_factory(fail_arch=Arch.ARM64)
        second = orchestrator(settings, kernel_tree, ["arm64,generic"], failing).run()
        assert not second.success
        assert "ARM64" not in Path(second.manifest_path).read_text()


class TestFailurePolicy:
    """fail-fast versus best-effort."""

    def test_fail_fast_aborts_without_manifest(self, settings, kernel_tree, toolchain_factory):
        settings = settings.model_copy(update={"max_parallel_targets": 1})
        toolchain = toolchain_factory(fail_arch=Arch.AMD64)
        result = orchestrator(
            settings, kernel_tree, ["amd64,generic", "arm64,generic"], toolchain
        ).run()

        assert result.mode == RunMode.FAIL_FAST
        assert result.run_state == RunState.ABORTED
        assert not result.success
        assert result.manifest_path is None
        assert not (settings.build_root / MANIFEST_FILE_NAME).exists()

        failed, aborted = result.targets
        assert failed.state == TargetState.FAILED
        assert failed.failed_stage == "compile"
        assert failed.error_code == "toolchain_failed"
        assert aborted.state == TargetState.FAILED
        assert aborted.error_code == "aborted"
        assert ("make", "5.4.0-100-custom-generic") in toolchain.calls
        assert sum(1 for c in toolchain.calls if c[0] == "make") == 1

    def test_best_effort_aggregates_successes(self, settings, kernel_tree, toolchain_factory):
        settings = settings.model_copy(update={"run_mode": "best-effort"})
        toolchain = toolchain_factory(fail_arch=Arch.AMD64)
        result = orchestrator(
            settings, kernel_tree, ["amd64,generic", "arm64,generic"], toolchain
        ).run()

        assert result.run_state == RunState.DONE
        assert not result.success
        assert result.succeeded == 1
        assert result.failed == 1

        text = Path(result.manifest_path).read_text()
        assert "ARM64_DEV_generic" in text
        assert "AMD64_DEV_generic" not in text

    def test_duplicate_publish_fails_target(self, settings, kernel_tree, fake_toolchain):
        """Rebuilding a published version without reuse is refused."""
        first = orchestrator(settings, kernel_tree, ["amd64,generic"], fake_toolchain).run()
        assert first.success

        second = orchestrator(settings, kernel_tree, ["amd64,generic"], fake_toolchain).run()
        (outcome,) = second.targets
        assert outcome.state == TargetState.FAILED
        assert outcome.failed_stage == "upload"
        assert outcome.error_code == "duplicate_version"

    def test_reuse_allows_republish(self, settings, kernel_tree, fake_toolchain):
        settings = settings.model_copy(update={"reuse": True})
        assert orchestrator(settings, kernel_tree, ["amd64,generic"], fake_toolchain).run().success
        assert orchestrator(settings, kernel_tree, ["amd64,generic"], fake_toolchain).run().success

    def test_manifest_conflict_is_fatal(self, settings, kernel_tree, fake_toolchain):
        orch = orchestrator(settings, kernel_tree, ["amd64,generic"], fake_toolchain)
        with patch(
            "kbuild_pipeline.builds.service.aggregate",
            side_effect=ManifestConflictError(("dev", "amd64", "generic"), {"A": "1"}, {"A": "2"}),
        ):
            with pytest.raises(ManifestConflictError):
                orch.run()
        assert orch.state == RunState.ABORTED


class TestCreateStore:
    """Tests for create_store function."""

    def test_local_default_dir(self, tmp_path):
        store = create_store(Settings(artifact_store="local"), tmp_path)
        assert isinstance(store, LocalArtifactStore)
        assert store.root == tmp_path / "astore"

    def test_command(self, tmp_path):
        settings = Settings(artifact_store="command", astore_command="up {local_path}")
        store = create_store(settings, tmp_path)
        assert isinstance(store, CommandArtifactStore)
        assert store.upload_command == "up {local_path}"


def archive_members(settings: Settings, outcome, kind: ArtifactKind) -> list[str]:
    (record,) = [r for r in outcome.records if r.kind == kind]
    with tarfile.open(settings.local_store_dir / record.storage_path) as tar:
        return tar.getnames()


class TestWorkspaceModes:
    """Reruns over an existing workspace."""

    def test_preserve_rerun_publishes_only_current_version(
        self, settings, kernel_tree, fake_toolchain
    ):
        old = settings.model_copy(update={"version_suffix": "-old"})
        assert orchestrator(old, kernel_tree, ["amd64,generic"], fake_toolchain).run().success

        new = settings.model_copy(update={"version_suffix": "-new"})
        result = orchestrator(new, kernel_tree, ["amd64,generic"], fake_toolchain).run()

        assert result.success
        (outcome,) = result.targets
        for kind in (ArtifactKind.BAZEL_ARCHIVE, ArtifactKind.APT_ARCHIVE):
            names = archive_members(new, outcome, kind)
            assert any("-new-" in n for n in names)
            assert not any("-old-" in n for n in names)

    def test_clean_run_discards_previous_outputs(self, settings, kernel_tree, fake_toolchain):
        old = settings.model_copy(update={"version_suffix": "-old"})
        assert orchestrator(old, kernel_tree, ["amd64,generic"], fake_toolchain).run().success

        new = settings.model_copy(update={"version_suffix": "-new", "clean": True})
        result = orchestrator(new, kernel_tree, ["amd64,generic"], fake_toolchain).run()

        assert result.success
        assert not any("-old-" in p.name for p in settings.build_root.rglob("*"))
        names = archive_members(new, result.targets[0], ArtifactKind.BAZEL_ARCHIVE)
        assert not any("-old-" in n for n in names)


class TestUnexpectedErrors:
    """Errors outside the pipeline taxonomy stay scoped to their target."""

    @staticmethod
    def broken_arm64(target):
        if target.arch == Arch.ARM64:
            return [Stage("explode", lambda ctx: {}["missing"]), *default_stages()]
        return default_stages()

    def test_best_effort_keeps_other_targets(self, settings, kernel_tree, fake_toolchain):
        settings = settings.model_copy(update={"run_mode": "best-effort"})
        result = orchestrator(
            settings,
            kernel_tree,
            ["amd64,generic", "arm64,generic"],
            fake_toolchain,
            stages_factory=self.broken_arm64,
        ).run()

        assert result.run_state == RunState.DONE
        amd64, arm64 = result.targets
        assert amd64.state == TargetState.PUBLISHED
        assert arm64.state == TargetState.FAILED
        assert arm64.failed_stage == "explode"
        assert arm64.error_code == "unexpected_error"
        assert "KeyError" in arm64.error
        assert arm64.stages[0].status == StageStatus.FAILED
        assert "AMD64_DEV_generic" in Path(result.manifest_path).read_text()

    def test_fail_fast_aborts(self, settings, kernel_tree, fake_toolchain):
        settings = settings.model_copy(update={"max_parallel_targets": 1})
        result = orchestrator(
            settings,
            kernel_tree,
            ["arm64,generic", "amd64,generic"],
            fake_toolchain,
            stages_factory=self.broken_arm64,
        ).run()

        assert result.run_state == RunState.ABORTED
        assert result.manifest_path is None
        assert [t.error_code for t in result.targets] == ["unexpected_error", "aborted"]

    def test_setup_error_fails_target(self, settings, kernel_tree, fake_toolchain):
        settings = settings.model_copy(update={"run_mode": "best-effort"})
        with patch(
            "kbuild_pipeline.builds.service.remove_fragment",
            side_effect=PermissionError("denied"),
        ):
            result = orchestrator(settings, kernel_tree, ["amd64,generic"], fake_toolchain).run()

        (outcome,) = result.targets
        assert outcome.state == TargetState.FAILED
        assert outcome.error_code == "os_error"
        assert "denied" in outcome.error
        assert not result.success
