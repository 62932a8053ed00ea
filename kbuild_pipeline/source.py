"""Kernel source tree preparation.

A kernel repo is either a local checkout, used in place, or a git URL
cloned into the workspace. Either way the tree must look like a kernel
tree (``MAINTAINERS`` at its root) and carry a Debian changelog.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from kbuild_pipeline.errors import SourceError

logger = logging.getLogger(__name__)

SOURCE_DIR_NAME = "src"
KERNEL_TREE_MARKER = "MAINTAINERS"


def validate_kernel_tree(source_dir: Path, changelog_path: str) -> None:
    """Check that a directory is a kernel tree with a Debian changelog.

    Raises:
        SourceError: If the tree is missing or incomplete.
    """
    if not source_dir.is_dir():
        raise SourceError(f"Kernel source tree not found: {source_dir}")
    if not (source_dir / KERNEL_TREE_MARKER).is_file():
        raise SourceError(f"Not the root of a kernel tree (no {KERNEL_TREE_MARKER}): {source_dir}")
    if not (source_dir / changelog_path).is_file():
        raise SourceError(f"Changelog not found: {source_dir / changelog_path}")


def clone_kernel_tree(
    repo_url: str,
    branch: str,
    dest: Path,
    timeout: int | None = None,
) -> Path:
    """Shallow-clone one branch of a kernel repository.

    Raises:
        SourceError: If git fails.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    cmd = ["git", "clone", "--depth", "1", "--branch", branch, repo_url, str(dest)]
    logger.info("Cloning %s (%s) into %s", repo_url, branch, dest)
    try:
        subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, check=True)
    except subprocess.CalledProcessError as e:
        raise SourceError(f"git clone of {repo_url} failed: {e.stderr.strip()}") from e
    except subprocess.TimeoutExpired as e:
        raise SourceError(f"git clone of {repo_url} timed out after {timeout}s") from e
    except OSError as e:
        raise SourceError(f"Failed to run git: {e}") from e
    return dest


def prepare_source(
    kernel_repo: str,
    branch: str,
    build_root: Path,
    changelog_path: str = "debian.master/changelog",
    timeout: int | None = None,
) -> Path:
    """Locate or fetch the kernel source tree.

    A local directory is validated and used in place. Otherwise the repo
    is cloned into ``<build_root>/src/linux``; an existing clone there
    (preserved workspace) is reused.

    Args:
        kernel_repo: Local path or git URL.
        branch: Branch to clone.
        build_root: Workspace root.
        changelog_path: Changelog location inside the tree.
        timeout: Clone timeout in seconds.

    Returns:
        Path of the validated source tree.

    Raises:
        SourceError: If the tree cannot be obtained or is invalid.
    """
    local = Path(kernel_repo).expanduser()
    if local.is_dir():
        source_dir = local.resolve()
        logger.info("Using local kernel tree %s", source_dir)
    else:
        source_dir = build_root / SOURCE_DIR_NAME / "linux"
        if source_dir.is_dir():
            logger.info("Reusing existing clone %s", source_dir)
        else:
            clone_kernel_tree(kernel_repo, branch, source_dir, timeout=timeout)

    validate_kernel_tree(source_dir, changelog_path)
    return source_dir


__all__ = [
    "KERNEL_TREE_MARKER",
    "clone_kernel_tree",
    "prepare_source",
    "validate_kernel_tree",
]
