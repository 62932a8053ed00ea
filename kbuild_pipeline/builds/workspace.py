"""Scratch workspace layout and preparation.

The workspace is partitioned per target so concurrent builds never share
mutable directories::

    <build_root>/
        deb-build/<arch>-<flavour>/     kernel build tree, boot image, logs
        deb-out/<arch>-<flavour>/       .deb packages
        apt-repo/<arch>-<flavour>/      portable APT repository
        bazel-archive/<arch>-<flavour>/ Bazel-ready tarball
        deb-archive/<arch>-<flavour>/   APT repository tarball
        astore-meta/                    shared, one fragment file per target
        .locks/                         source-tree locks
"""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from kbuild_pipeline.errors import LOCK_TIMEOUT, ConfigError, StageError
from kbuild_pipeline.targets import TargetSpec

logger = logging.getLogger(__name__)

META_DIR_NAME = "astore-meta"
LOCK_DIR_NAME = ".locks"
LOCK_POLL_INTERVAL = 0.1


@dataclass(frozen=True)
class TargetLayout:
    """Directories owned by one target.

    Attributes:
        build_dir: Per-target build root (``deb-build/<target>``).
        deb_dir: Output directory for .deb packages.
        repo_dir: Output directory for the APT repository.
        bazel_archive_dir: Output directory for the Bazel tarball.
        apt_archive_dir: Output directory for the APT repository tarball.
        meta_dir: Shared manifest fragment directory.
    """

    build_dir: Path
    deb_dir: Path
    repo_dir: Path
    bazel_archive_dir: Path
    apt_archive_dir: Path
    meta_dir: Path

    @property
    def kernel_build_dir(self) -> Path:
        """Kernel ``O=`` output directory."""
        return self.build_dir / "install" / "build"

    @property
    def boot_dir(self) -> Path:
        return self.build_dir / "boot"

    @property
    def log_dir(self) -> Path:
        return self.build_dir / "logs"

    @property
    def staging_dir(self) -> Path:
        """Scratch space for assembling package trees."""
        return self.build_dir / "pkg-staging"

    def owned_dirs(self) -> tuple[Path, ...]:
        return (
            self.build_dir,
            self.deb_dir,
            self.repo_dir,
            self.bazel_archive_dir,
            self.apt_archive_dir,
        )

    def create(self) -> None:
        """Create all directories of this layout."""
        for d in (*self.owned_dirs(), self.meta_dir, self.log_dir):
            d.mkdir(parents=True, exist_ok=True)


def layout_for(build_root: Path, target: TargetSpec) -> TargetLayout:
    """Compute the workspace layout of a target."""
    name = target.name
    return TargetLayout(
        build_dir=build_root / "deb-build" / name,
        deb_dir=build_root / "deb-out" / name,
        repo_dir=build_root / "apt-repo" / name,
        bazel_archive_dir=build_root / "bazel-archive" / name,
        apt_archive_dir=build_root / "deb-archive" / name,
        meta_dir=build_root / META_DIR_NAME,
    )


def _check_removable(build_root: Path) -> Path:
    resolved = build_root.resolve()
    forbidden = {Path(resolved.anchor), Path.home().resolve()}
    if resolved in forbidden:
        raise ConfigError(f"Refusing to clean workspace at {resolved}")
    return resolved


def prepare_workspace(build_root: Path, clean: bool = False) -> Path:
    """Prepare the scratch workspace.

    In clean mode the whole workspace is discarded first, giving a
    known-good baseline. Otherwise existing content is preserved and
    reused, which is faster but not reproducible.

    Args:
        build_root: Workspace root.
        clean: Discard existing content first.

    Returns:
        The resolved workspace root.

    Raises:
        ConfigError: If the workspace root is unsafe to clean.
    """
    root = _check_removable(build_root)
    if clean and root.exists():
        logger.info("Cleaning workspace %s", root)
        shutil.rmtree(root)
    elif root.exists():
        logger.info("Reusing existing workspace %s", root)

    root.mkdir(parents=True, exist_ok=True)
    (root / META_DIR_NAME).mkdir(exist_ok=True)
    (root / LOCK_DIR_NAME).mkdir(exist_ok=True)
    return root


def _acquire(fd: int, name: str, timeout: float | None) -> None:
    if timeout is None:
        fcntl.flock(fd, fcntl.LOCK_EX)
        return
    deadline = time.monotonic() + timeout
    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return
        except BlockingIOError:
            if time.monotonic() >= deadline:
                raise StageError(
                    f"Timed out after {timeout}s waiting for lock {name}", code=LOCK_TIMEOUT
                ) from None
            time.sleep(LOCK_POLL_INTERVAL)


@contextmanager
def workspace_lock(
    lock_dir: Path,
    key: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Hold an exclusive ``flock`` on ``<lock_dir>/<key>.lock``.

    Serialises steps that mutate shared state, such as generating
    configs inside the shared kernel source tree.

    Args:
        lock_dir: Directory for lock files.
        key: Lock name.
        timeout: Seconds to wait for the lock (None = block).

    Raises:
        StageError: With code ``lock_timeout`` if the wait runs out.
    """
    name = key.replace(":", "_").replace("/", "_")[:64]
    lock_dir.mkdir(parents=True, exist_ok=True)
    fd = os.open(lock_dir / f"{name}.lock", os.O_RDWR | os.O_CREAT, 0o600)
    try:
        _acquire(fd, name, timeout)
        logger.debug("Holding lock %s", name)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Released lock %s", name)
    finally:
        os.close(fd)


__all__ = [
    "LOCK_DIR_NAME",
    "META_DIR_NAME",
    "TargetLayout",
    "layout_for",
    "prepare_workspace",
    "workspace_lock",
]
