"""Shared type definitions for kbuild_pipeline.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class StageStatus(str, Enum):
    """Status of one build stage for one target."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class TargetState(str, Enum):
    """Lifecycle state of a target within a run."""

    PENDING = "pending"
    BUILDING = "building"
    PUBLISHED = "published"
    FAILED = "failed"


class RunState(str, Enum):
    """Lifecycle state of a pipeline run."""

    INIT = "init"
    SOURCE_PREPARED = "source_prepared"
    AGGREGATED = "aggregated"
    DONE = "done"
    ABORTED = "aborted"


class RunMode(str, Enum):
    """How a target failure affects the rest of the run."""

    FAIL_FAST = "fail-fast"
    BEST_EFFORT = "best-effort"


class ArtifactKind(str, Enum):
    """Kinds of artifacts published per target."""

    PACKAGE_ARCHIVE = "package-archive"
    BAZEL_ARCHIVE = "bazel-archive"
    APT_ARCHIVE = "apt-repo-archive"


@dataclass
class StageResult:
    """Execution record of one stage for one target.

    Skipped and pending stages never carry timestamps.
    """

    stage_name: str
    status: StageStatus = StageStatus.PENDING
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error: str | None = None
    error_code: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "stage_name": self.stage_name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "error": self.error,
            "error_code": self.error_code,
        }


@dataclass(frozen=True)
class ArtifactRecord:
    """Metadata describing one published artifact."""

    target: str
    kind: ArtifactKind
    storage_path: str
    version: str
    checksum: str

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary for JSON serialization."""
        return {
            "target": self.target,
            "kind": self.kind.value,
            "storage_path": self.storage_path,
            "version": self.version,
            "checksum": self.checksum,
        }


@dataclass
class UploadResult:
    """What the artifact store reports back after an upload."""

    remote_path: str
    checksum: str
    details: dict[str, object] = field(default_factory=dict)


__all__ = [
    "ArtifactKind",
    "ArtifactRecord",
    "RunMode",
    "RunState",
    "StageResult",
    "StageStatus",
    "TargetState",
    "UploadResult",
]
