"""External toolchain invocation.

This module handles:
- Composing kernel `make` commands per architecture
- Running external commands with output captured to per-step log files
- Wrapping the Debian tooling used to build packages and APT indexes
- Checking that required tools are installed

The pipeline never reimplements these tools; it only defines what each
invocation consumes and produces.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from kbuild_pipeline.errors import MISSING_TOOL, ConfigError, ToolchainError
from kbuild_pipeline.targets import Arch

logger = logging.getLogger(__name__)

# Fraction of host CPUs granted to one kernel compile
CPU_SHARE_DIVISOR = 4


@dataclass
class CommandResult:
    """Result of an external command.

    Attributes:
        exit_code: Process exit code.
        log_path: Path to the command log file.
        started_at: Start time.
        finished_at: Finish time.
        command: The command that was executed.
    """

    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def compute_parallelism(cpu_count: int | None = None) -> int:
    """Compute the make job count for one kernel compile.

    One quarter of the detected cores, never below 1, so several targets
    can build side by side without oversubscribing the host.

    Args:
        cpu_count: Detected CPU count (None = ask the OS).

    Returns:
        Job count for ``make -j``.
    """
    if cpu_count is None:
        cpu_count = os.cpu_count() or 1
    return max(1, cpu_count // CPU_SHARE_DIVISOR)


def check_tools(tools: Sequence[str]) -> None:
    """Ensure every tool is on PATH.

    Raises:
        ConfigError: Listing all missing tools.
    """
    missing = [t for t in tools if shutil.which(t) is None]
    if missing:
        raise ConfigError(
            f"Required tools not found on PATH: {', '.join(missing)}",
            code=MISSING_TOOL,
        )


def run_command(
    cmd: Sequence[str],
    cwd: Path,
    log_path: Path,
    timeout: int | None = None,
    env_override: dict[str, str] | None = None,
    stdout_path: Path | None = None,
    check: bool = True,
) -> CommandResult:
    """Run an external command with output captured to a log file.

    Args:
        cmd: Command and arguments.
        cwd: Working directory.
        log_path: Log file receiving stdout/stderr.
        timeout: Timeout in seconds (None = no timeout).
        env_override: Optional environment variable overrides.
        stdout_path: Send stdout to this file instead of the log.
        check: Raise on non-zero exit.

    Returns:
        CommandResult with execution details.

    Raises:
        ToolchainError: If the command cannot start, times out, or exits
            non-zero while ``check`` is set.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    cmd_str = shlex.join(cmd)
    logger.debug("Executing: %s (cwd=%s)", cmd_str, cwd)

    env: dict[str, str] | None = None
    if env_override:
        env = dict(os.environ)
        env.update(env_override)

    started_at = datetime.now(timezone.utc)

    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {cwd}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            if stdout_path is not None:
                with stdout_path.open("wb") as out:
                    result = subprocess.run(
                        cmd,
                        cwd=cwd,
                        stdout=out,
                        stderr=log_file,
                        timeout=timeout,
                        env=env,
                        check=False,
                    )
            else:
                result = subprocess.run(
                    cmd,
                    cwd=cwd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    timeout=timeout,
                    env=env,
                    check=False,
                )

    except subprocess.TimeoutExpired as e:
        message = f"{cmd[0]} timed out after {timeout} seconds"
        logger.error("%s. See log: %s", message, log_path)
        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
        raise ToolchainError(message, exit_code=-1, log_path=str(log_path)) from e

    except OSError as e:
        message = f"Failed to execute {cmd[0]}: {e}"
        logger.error(message)
        raise ToolchainError(message, log_path=str(log_path)) from e

    finished_at = datetime.now(timezone.utc)
    exit_code = result.returncode

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    if check and exit_code != 0:
        message = f"{cmd[0]} failed with exit code {exit_code}"
        logger.error("%s. See log: %s", message, log_path)
        raise ToolchainError(message, exit_code=exit_code, log_path=str(log_path))

    return CommandResult(
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
    )


def compose_make_command(
    arch: Arch,
    output_dir: Path,
    kernel_release: str,
    parallelism: int,
) -> list[str]:
    """Compose the kernel build command.

    Args:
        arch: Target architecture.
        output_dir: Kernel ``O=`` output directory.
        kernel_release: Value for ``KERNELRELEASE``.
        parallelism: ``make -j`` job count.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    toolchain = arch.toolchain
    cmd = ["make", "-s", f"O={output_dir}", "-j", str(parallelism)]
    cmd.extend(toolchain.make_args)
    cmd.append(f"KERNELRELEASE={kernel_release}")
    cmd.extend(["prepare", "modules", toolchain.image_target])
    return cmd


class Toolchain:
    """Thin wrapper around the external build and packaging tools.

    Every method blocks until the tool exits and raises ToolchainError on
    failure.
    """

    required_tools: tuple[str, ...] = (
        "make",
        "fakeroot",
        "dpkg-deb",
        "dpkg-scanpackages",
    )

    def __init__(self, timeout: int | None = None) -> None:
        self.timeout = timeout

    def generate_configs(self, source_dir: Path, arch: Arch, log_dir: Path) -> None:
        """Regenerate per-flavour configs under ``CONFIGS/`` in the tree."""
        run_command(
            ["fakeroot", "debian/rules", "clean"],
            cwd=source_dir,
            log_path=log_dir / "rules-clean.log",
            timeout=self.timeout,
        )
        run_command(
            ["fakeroot", "debian/rules", "genconfigs", f"arch={arch.value}"],
            cwd=source_dir,
            log_path=log_dir / "genconfigs.log",
            timeout=self.timeout,
        )

    def build_kernel(
        self,
        source_dir: Path,
        arch: Arch,
        output_dir: Path,
        kernel_release: str,
        parallelism: int,
        log_dir: Path,
    ) -> CommandResult:
        """Build kernel image and modules into ``output_dir``."""
        cmd = compose_make_command(arch, output_dir, kernel_release, parallelism)
        logger.info("Building kernel %s with %d jobs", kernel_release, parallelism)
        return run_command(
            cmd,
            cwd=source_dir,
            log_path=log_dir / "make.log",
            timeout=self.timeout,
        )

    def build_deb(self, package_root: Path, output_dir: Path, log_dir: Path) -> Path:
        """Build a .deb from a staged package tree.

        Returns:
            Path of the produced package.
        """
        deb_path = output_dir / f"{package_root.name}.deb"
        run_command(
            ["dpkg-deb", "--build", "--root-owner-group", str(package_root), str(deb_path)],
            cwd=package_root.parent,
            log_path=log_dir / f"dpkg-deb-{package_root.name}.log",
            timeout=self.timeout,
        )
        return deb_path

    def scan_packages(self, repo_dir: Path, pool: str, packages_file: Path, log_dir: Path) -> None:
        """Write an APT ``Packages`` index for ``repo_dir/pool``."""
        run_command(
            ["dpkg-scanpackages", "--multiversion", pool],
            cwd=repo_dir,
            log_path=log_dir / "dpkg-scanpackages.log",
            timeout=self.timeout,
            stdout_path=packages_file,
        )


__all__ = [
    "CPU_SHARE_DIVISOR",
    "CommandResult",
    "Toolchain",
    "check_tools",
    "compose_make_command",
    "compute_parallelism",
    "run_command",
]
