"""Error taxonomy for the kernel build pipeline.

Every error carries a stable ``code`` string for programmatic handling,
mirroring the codes surfaced in ``--json`` output:

- ConfigError: bad settings, missing external tools, invalid targets.
  Fatal before any build starts.
- VersionParseError: changelog does not yield a kernel version. Fatal.
- StageError: a build stage failed. Terminal for one target only.
- PublishError: artifact-store upload failed. Terminal for one target,
  local build outputs are kept for manual recovery.
- ManifestConflictError: two fragments disagree on the same key. Fatal.
"""

from __future__ import annotations

from typing import Any

CONFIG_ERROR = "config_error"
INVALID_TARGET = "invalid_target"
MISSING_TOOL = "missing_tool"
LOCK_TIMEOUT = "lock_timeout"
VERSION_PARSE_ERROR = "version_parse_error"
STAGE_ERROR = "stage_failed"
TOOLCHAIN_ERROR = "toolchain_failed"
PUBLISH_ERROR = "publish_failed"
DUPLICATE_VERSION = "duplicate_version"
CHECKSUM_MISMATCH = "checksum_mismatch"
MANIFEST_CONFLICT = "manifest_conflict"
SOURCE_ERROR = "source_error"


class PipelineError(Exception):
    """Base error for pipeline operations."""

    def __init__(self, message: str, code: str = "pipeline_error") -> None:
        super().__init__(message)
        self.code = code

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"code": self.code, "message": str(self)}


class ConfigError(PipelineError):
    """Raised for invalid configuration or a missing external tool."""

    def __init__(self, message: str, code: str = CONFIG_ERROR) -> None:
        super().__init__(message, code=code)


class InvalidTargetError(ConfigError):
    """Raised when a target spec string cannot be parsed."""

    def __init__(self, raw: str, reason: str) -> None:
        super().__init__(f"Invalid target spec {raw!r}: {reason}", code=INVALID_TARGET)
        self.raw = raw
        self.reason = reason


class VersionParseError(PipelineError):
    """Raised when the changelog does not match the expected grammar."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=VERSION_PARSE_ERROR)


class StageError(PipelineError):
    """Raised by a build stage to signal failure for its target."""

    def __init__(
        self,
        message: str,
        stage: str | None = None,
        code: str = STAGE_ERROR,
    ) -> None:
        super().__init__(message, code=code)
        self.stage = stage


class ToolchainError(StageError):
    """Raised when an external command exits non-zero or cannot start."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        log_path: str | None = None,
    ) -> None:
        super().__init__(message, code=TOOLCHAIN_ERROR)
        self.exit_code = exit_code
        self.log_path = log_path

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.exit_code is not None:
            data["exit_code"] = self.exit_code
        if self.log_path is not None:
            data["log_path"] = self.log_path
        return data


class PublishError(PipelineError):
    """Raised when an artifact cannot be published."""

    def __init__(
        self,
        message: str,
        remote_path: str | None = None,
        code: str = PUBLISH_ERROR,
    ) -> None:
        super().__init__(message, code=code)
        self.remote_path = remote_path


class ManifestConflictError(PipelineError):
    """Raised when two fragments define one manifest key differently.

    Two distinct keys whose variable names render identically also
    conflict; ``other_key`` then names the key seen first.

    Attributes:
        key: The conflicting (label, arch, flavour) key.
        first: Variables from the fragment seen first.
        second: Variables from the conflicting fragment.
        other_key: Distinct key rendering to the same names, if any.
    """

    def __init__(
        self,
        key: tuple[str, str, str],
        first: dict[str, str],
        second: dict[str, str],
        other_key: tuple[str, str, str] | None = None,
    ) -> None:
        name = "/".join(key)
        if other_key is None:
            message = f"Conflicting manifest entries for {name}: {first} != {second}"
        else:
            other = "/".join(other_key)
            message = f"Manifest entries for {other} and {name} render to the same variable names"
        super().__init__(message, code=MANIFEST_CONFLICT)
        self.key = key
        self.other_key = other_key
        self.first = first
        self.second = second


class SourceError(ConfigError):
    """Raised when the kernel source tree cannot be prepared."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=SOURCE_ERROR)


__all__ = [
    "CHECKSUM_MISMATCH",
    "CONFIG_ERROR",
    "DUPLICATE_VERSION",
    "INVALID_TARGET",
    "LOCK_TIMEOUT",
    "MANIFEST_CONFLICT",
    "MISSING_TOOL",
    "PUBLISH_ERROR",
    "SOURCE_ERROR",
    "STAGE_ERROR",
    "TOOLCHAIN_ERROR",
    "VERSION_PARSE_ERROR",
    "ConfigError",
    "InvalidTargetError",
    "ManifestConflictError",
    "PipelineError",
    "PublishError",
    "SourceError",
    "StageError",
    "ToolchainError",
    "VersionParseError",
]
