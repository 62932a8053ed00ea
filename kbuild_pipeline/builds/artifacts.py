"""Artifact archiving, checksums and publishing.

This module handles:
- Computing checksums of build outputs
- Creating the Bazel and APT repository tarballs
- Uploading artifacts to an artifact store
- Recording what was published for manifest generation

Remote paths follow ``<astore_root>/<branch>/<target>/<kind>/<filename>``;
the file name carries the kernel version, so each version gets its own key.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shlex
import shutil
import subprocess
import tarfile
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from kbuild_pipeline.errors import (
    CHECKSUM_MISMATCH,
    DUPLICATE_VERSION,
    PublishError,
)
from kbuild_pipeline.targets import TargetSpec
from kbuild_pipeline.types import ArtifactKind, ArtifactRecord, UploadResult

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def _normalize_owner(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = info.gid = 0
    info.uname = info.gname = "root"
    return info


def create_tarball(source_dir: Path, output_path: Path, arcname: str) -> Path:
    """Create a gzip'd tarball of a directory.

    Entries are owned by root regardless of who ran the build.

    Args:
        source_dir: Directory to archive.
        output_path: Tarball path (parent is created).
        arcname: Top-level directory name inside the archive.

    Returns:
        Path to the written tarball.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = output_path.with_name(output_path.name + ".tmp")
    with tarfile.open(tmp_path, "w:gz") as tar:
        tar.add(source_dir, arcname=arcname, filter=_normalize_owner)
    os.replace(tmp_path, output_path)
    logger.info("Wrote archive %s", output_path)
    return output_path


def remote_path_for(
    astore_root: str,
    branch: str,
    target: TargetSpec,
    kind: ArtifactKind,
    filename: str,
) -> str:
    """Compute the artifact-store path of an artifact."""
    return "/".join(
        part.strip("/")
        for part in (astore_root, branch, target.name, kind.value, filename)
    )


class ArtifactStore(Protocol):
    """Artifact-store client contract."""

    def upload(self, local_path: Path, remote_path: str) -> UploadResult:
        """Upload a file and report where it landed and its checksum."""
        ...

    def exists(self, remote_path: str) -> bool:
        """Whether something is already stored at ``remote_path``."""
        ...


class LocalArtifactStore:
    """Artifact store backed by a local directory.

    Useful for development and for tests; mirrors remote paths below
    ``root``.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, remote_path: str) -> Path:
        return self.root / remote_path

    def exists(self, remote_path: str) -> bool:
        return self._path(remote_path).is_file()

    def upload(self, local_path: Path, remote_path: str) -> UploadResult:
        dest = self._path(remote_path)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            tmp = dest.with_name(dest.name + ".part")
            shutil.copyfile(local_path, tmp)
            os.replace(tmp, dest)
        except OSError as e:
            raise PublishError(
                f"Failed to store {local_path} at {dest}: {e}",
                remote_path=remote_path,
            ) from e
        return UploadResult(remote_path=remote_path, checksum=compute_file_hash(dest))


class CommandArtifactStore:
    """Artifact store driven by an external upload command.

    ``upload_command`` and ``exists_command`` are templates with
    ``{local_path}`` and ``{remote_path}`` placeholders. Without an
    ``exists_command`` nothing is assumed to be stored already.
    """

    def __init__(
        self,
        upload_command: str,
        exists_command: str | None = None,
        timeout: int | None = None,
    ) -> None:
        self.upload_command = upload_command
        self.exists_command = exists_command
        self.timeout = timeout

    def _compose(self, template: str, local_path: Path | None, remote_path: str) -> list[str]:
        return [
            part.format(local_path=local_path or "", remote_path=remote_path)
            for part in shlex.split(template)
        ]

    def exists(self, remote_path: str) -> bool:
        if self.exists_command is None:
            return False
        cmd = self._compose(self.exists_command, None, remote_path)
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise PublishError(
                f"Failed to query artifact store for {remote_path}: {e}",
                remote_path=remote_path,
            ) from e
        return result.returncode == 0

    def upload(self, local_path: Path, remote_path: str) -> UploadResult:
        cmd = self._compose(self.upload_command, local_path, remote_path)
        logger.debug("Uploading: %s", shlex.join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=True,
            )
        except subprocess.TimeoutExpired as e:
            raise PublishError(
                f"Upload of {local_path} timed out after {self.timeout}s",
                remote_path=remote_path,
            ) from e
        except subprocess.CalledProcessError as e:
            raise PublishError(
                f"Upload of {local_path} failed: {e.stderr.strip() or e}",
                remote_path=remote_path,
            ) from e
        except OSError as e:
            raise PublishError(
                f"Failed to run upload command: {e}",
                remote_path=remote_path,
            ) from e

        # Upload tool reports no digest.
        return UploadResult(
            remote_path=remote_path,
            checksum=compute_file_hash(local_path),
            details={"stdout": result.stdout.strip()},
        )


class ArtifactPublisher:
    """Uploads build outputs and records what was published.

    Publishing the same (target, kind, version) twice is an error unless
    ``allow_reuse`` is set, which is only the case for runs reusing a
    preserved workspace. Safe to share between target threads.
    """

    def __init__(
        self,
        store: ArtifactStore,
        astore_root: str,
        branch: str,
        allow_reuse: bool = False,
    ) -> None:
        self.store = store
        self.astore_root = astore_root
        self.branch = branch
        self.allow_reuse = allow_reuse
        self._published: set[tuple[str, ArtifactKind, str]] = set()
        self._lock = threading.Lock()

    def _claim(self, target: TargetSpec, kind: ArtifactKind, version: str, remote_path: str) -> None:
        key = (target.name, kind, version)
        with self._lock:
            duplicate = key in self._published
            self._published.add(key)

        if not duplicate and not self.allow_reuse:
            duplicate = self.store.exists(remote_path)

        if duplicate and not self.allow_reuse:
            raise PublishError(
                f"{kind.value} for {target.name} version {version} is already "
                f"published at {remote_path}",
                remote_path=remote_path,
                code=DUPLICATE_VERSION,
            )

    def publish(
        self,
        target: TargetSpec,
        version: str,
        build_outputs: Mapping[ArtifactKind, Path],
    ) -> list[ArtifactRecord]:
        """Publish every artifact of one target.

        Args:
            target: Owning target.
            version: Canonical kernel version string.
            build_outputs: Local artifact path per kind.

        Returns:
            One ArtifactRecord per published artifact.

        Raises:
            PublishError: On backend failure, checksum mismatch, or a
                duplicate version.
        """
        records: list[ArtifactRecord] = []
        for kind in sorted(build_outputs, key=lambda k: k.value):
            local_path = build_outputs[kind]
            if not local_path.is_file():
                raise PublishError(f"Artifact to publish does not exist: {local_path}")

            remote_path = remote_path_for(
                self.astore_root, self.branch, target, kind, local_path.name
            )
            self._claim(target, kind, version, remote_path)

            checksum = compute_file_hash(local_path)
            logger.info("[%s] Uploading %s to %s", target.name, local_path.name, remote_path)
            uploaded = self.store.upload(local_path, remote_path)

            if uploaded.checksum != checksum:
                raise PublishError(
                    f"Checksum mismatch for {remote_path}: "
                    f"local {checksum}, stored {uploaded.checksum}",
                    remote_path=remote_path,
                    code=CHECKSUM_MISMATCH,
                )

            records.append(
                ArtifactRecord(
                    target=target.name,
                    kind=kind,
                    storage_path=uploaded.remote_path,
                    version=version,
                    checksum=checksum,
                )
            )

        return records


__all__ = [
    "HASH_CHUNK_SIZE",
    "ArtifactPublisher",
    "ArtifactStore",
    "CommandArtifactStore",
    "LocalArtifactStore",
    "compute_file_hash",
    "create_tarball",
    "remote_path_for",
]
