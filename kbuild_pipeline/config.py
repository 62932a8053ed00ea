"""Configuration settings for kbuild_pipeline.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence:
CLI flags > run file > env vars > defaults.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from kbuild_pipeline.errors import ConfigError


def _default_build_root() -> Path:
    """Return the default scratch workspace root."""
    return Path.cwd() / "kbuild-out"


def _default_max_parallel_targets() -> int:
    """Return a parallel target count bounded by host CPUs."""
    return max(1, min(2, (os.cpu_count() or 1) // 4))


class Settings(BaseSettings):
    """Pipeline settings.

    Settings are loaded from environment variables with the KBUILD_ prefix.
    CLI flags can override these at runtime via resolve_settings().
    """

    model_config = SettingsConfigDict(
        env_prefix="KBUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    build_root: Path = Field(
        default_factory=_default_build_root,
        description="Root of the scratch workspace",
    )
    changelog_path: str = Field(
        default="debian.master/changelog",
        description="Changelog location relative to the kernel tree",
    )

    # Publishing
    astore_root: str = Field(
        default="kernel",
        description="Artifact-store root path for uploads",
    )
    branch: str = Field(
        default="master",
        description="Kernel source branch, also used in upload paths",
    )
    label: str = Field(
        default="dev",
        description="Label embedded in generated manifest variable names",
    )
    artifact_store: Literal["local", "command"] = Field(
        default="command",
        description="Artifact-store backend",
    )
    astore_command: str = Field(
        default="enkit astore upload --file {remote_path} {local_path}",
        description="Upload command template ({local_path}, {remote_path})",
    )
    astore_exists_command: str | None = Field(
        default=None,
        description="Command template exiting 0 when {remote_path} is stored",
    )
    local_store_dir: Path | None = Field(
        default=None,
        description="Directory used by the local artifact store",
    )

    # Versioning
    version_suffix: str = Field(
        default="",
        description="Suffix appended to the changelog version",
    )

    # Operational modes
    run_mode: Literal["fail-fast", "best-effort"] = Field(
        default="fail-fast",
        description="Stop all targets on first failure, or keep going",
    )
    clean: bool = Field(
        default=False,
        description="Discard the scratch workspace before building",
    )
    reuse: bool = Field(
        default=False,
        description="Allow republishing a version from a preserved workspace",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    max_parallel_targets: int = Field(
        default_factory=_default_max_parallel_targets,
        ge=1,
        le=16,
        description="Maximum targets built at the same time",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=4 * 3600,
        ge=60,
        description="Timeout for each external build command",
    )
    upload_timeout: int = Field(
        default=1800,
        ge=10,
        description="Timeout for each artifact upload",
    )
    lock_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Wait limit for the source-tree lock (None = wait indefinitely)",
    )


def get_settings() -> Settings:
    """Get settings loaded from the environment.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def load_run_file(path: Path) -> dict[str, Any]:
    """Load a YAML run file.

    The run file holds the same keys as Settings plus an optional
    ``targets`` list.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed mapping (empty for an empty file).

    Raises:
        ConfigError: If the file is missing or not a YAML mapping.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Run file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Run file is not valid YAML: {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")
    return data


def resolve_settings(
    overrides: dict[str, Any] | None = None,
    run_file: dict[str, Any] | None = None,
    base: Settings | None = None,
) -> Settings:
    """Merge explicit values over a run file over environment and defaults.

    ``None`` values in ``overrides`` mean "not given" and never shadow a
    lower-precedence value.

    Args:
        overrides: Explicit values, usually from CLI flags.
        run_file: Values loaded from a run file.
        base: Environment-derived settings; loaded if not given.

    Returns:
        A validated Settings instance.

    Raises:
        ConfigError: If the merged values fail validation.
    """
    if base is None:
        base = get_settings()

    data = base.model_dump()
    for layer in (run_file or {}, overrides or {}):
        data.update(
            {
                k: v
                for k, v in layer.items()
                if v is not None and k in Settings.model_fields
            }
        )

    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "Settings",
    "get_settings",
    "load_run_file",
    "print_settings_json",
    "resolve_settings",
]
