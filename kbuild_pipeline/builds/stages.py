"""Canonical build-and-publish stages for one kernel target.

Stage order and documented outputs (keys of ``StageContext.outputs``):

1. genconfig      -> kernel_config
2. compile        -> kernel_tree, kernel_image, install_script
3. package        -> image_deb, headers_deb
4. apt-repo       -> apt_repo
5. bazel-archive  -> bazel_archive
6. apt-archive    -> apt_archive
7. upload         -> (ArtifactRecords in ``StageContext.records``)
8. bazel-meta     -> fragment

A stage reads only the outputs of earlier stages listed here.
"""

from __future__ import annotations

import fnmatch
import gzip
import logging
import os
import shutil
import stat
from pathlib import Path

from kbuild_pipeline.builds.artifacts import create_tarball
from kbuild_pipeline.builds.manifest import fragment_for, fragment_path, write_fragment
from kbuild_pipeline.builds.runner import Stage, StageContext
from kbuild_pipeline.builds.workspace import workspace_lock
from kbuild_pipeline.errors import StageError
from kbuild_pipeline.types import ArtifactKind

logger = logging.getLogger(__name__)

GENCONFIG = "genconfig"
COMPILE = "compile"
PACKAGE = "package"
APT_REPO = "apt-repo"
BAZEL_ARCHIVE = "bazel-archive"
APT_ARCHIVE = "apt-archive"
UPLOAD = "upload"
BAZEL_META = "bazel-meta"

SOURCE_TREE_LOCK = "kernel-source-tree"

# Intermediate build products removed from the published kernel tree
PRUNE_PATTERNS = (
    ".*.cmd",
    "*.a",
    "*.o",
    "*.d",
    "*.ko",
    "*.order",
    "*.mod",
    "*.mod.c",
    "*.mod.o",
    "*.log",
)

GENERATED_MAKEFILE = """\
# Automatically generated: don't edit
include ./source/Makefile
"""

INSTALL_SCRIPT = """\
#!/bin/sh

echo "install"
"""

PACKAGE_MAINTAINER = "Kernel Build Pipeline <kernel-builds@localhost>"


def kernel_config_path(ctx: StageContext) -> Path:
    """Location of the generated config for the context's target."""
    arch = ctx.target.arch.value
    return ctx.source_dir / "CONFIGS" / f"{arch}-config.flavour.{ctx.target.flavour}"


def generate_config(ctx: StageContext) -> None:
    """Generate per-arch configs and seed the kernel build directory."""
    build_dir = ctx.layout.kernel_build_dir
    kconfig = kernel_config_path(ctx)

    # genconfigs rewrites CONFIGS/ inside the shared source tree
    with workspace_lock(ctx.lock_dir, SOURCE_TREE_LOCK, timeout=ctx.lock_timeout):
        ctx.toolchain.generate_configs(ctx.source_dir, ctx.target.arch, ctx.layout.log_dir)

        if not os.access(kconfig, os.R_OK):
            raise StageError(
                f"Unable to find kernel config for arch-flavour {ctx.target.name}: {kconfig}"
            )

        build_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(kconfig, build_dir / ".config")

    ctx.outputs["kernel_config"] = build_dir / ".config"


def prune_build_tree(build_dir: Path, patterns: tuple[str, ...] = PRUNE_PATTERNS) -> int:
    """Delete intermediate build files, without following symlinks.

    Returns:
        Number of files removed.
    """
    removed = 0
    for dirpath, _dirnames, filenames in os.walk(build_dir):
        for filename in filenames:
            if any(fnmatch.fnmatch(filename, p) for p in patterns):
                path = Path(dirpath) / filename
                if path.is_symlink() or not path.is_file():
                    continue
                path.unlink()
                removed += 1
    return removed


def finalize_kernel_tree(ctx: StageContext, build_dir: Path) -> None:
    """Make the build tree relocatable and stage the boot image.

    The ``source`` link is made relative and the top-level Makefile is
    replaced by one including ``./source/Makefile``, so the tree works
    wherever it is unpacked next to its sources.
    """
    version = str(ctx.version)

    source_link = build_dir / "source"
    if source_link.is_symlink() or source_link.exists():
        source_link.unlink()
    source_link.symlink_to(os.path.relpath(ctx.source_dir, build_dir))

    (build_dir / "Makefile").write_text(GENERATED_MAKEFILE)

    removed = prune_build_tree(build_dir)
    logger.debug("[%s] Pruned %d intermediate files", ctx.target.name, removed)

    (build_dir / "kernel-version.txt").write_text(version + "\n")

    install_script = ctx.layout.build_dir / f"install-{version}.sh"
    install_script.write_text(INSTALL_SCRIPT)
    install_script.chmod(install_script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    ctx.outputs["install_script"] = install_script

    image = build_dir / ctx.target.arch.toolchain.output_image
    if not image.is_file():
        raise StageError(f"Kernel image not produced: {image}")
    ctx.layout.boot_dir.mkdir(parents=True, exist_ok=True)
    boot_image = ctx.layout.boot_dir / f"vmlinuz-{version}"
    shutil.copyfile(image, boot_image)
    ctx.outputs["kernel_image"] = boot_image


def compile_kernel(ctx: StageContext) -> None:
    """Build kernel image and modules with the external toolchain."""
    build_dir = ctx.require_output("kernel_config").parent
    ctx.toolchain.build_kernel(
        source_dir=ctx.source_dir,
        arch=ctx.target.arch,
        output_dir=build_dir,
        kernel_release=str(ctx.version),
        parallelism=ctx.parallelism,
        log_dir=ctx.layout.log_dir,
    )
    finalize_kernel_tree(ctx, build_dir)
    ctx.outputs["kernel_tree"] = build_dir


def reset_dir(path: Path) -> Path:
    """Empty a per-target output directory left by an earlier run."""
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)
    return path


def write_control(package_root: Path, package: str, version: str, arch: str, description: str) -> None:
    """Write a minimal DEBIAN/control file."""
    debian_dir = package_root / "DEBIAN"
    debian_dir.mkdir(parents=True, exist_ok=True)
    fields = {
        "Package": package,
        "Version": version,
        "Architecture": arch,
        "Maintainer": PACKAGE_MAINTAINER,
        "Section": "kernel",
        "Priority": "optional",
        "Description": description,
    }
    (debian_dir / "control").write_text("".join(f"{k}: {v}\n" for k, v in fields.items()))


def package_debs(ctx: StageContext) -> None:
    """Assemble the kernel image and headers packages."""
    version = str(ctx.version)
    arch = ctx.target.arch.value
    kernel_image = ctx.require_output("kernel_image")
    kernel_tree = ctx.require_output("kernel_tree")

    staging = reset_dir(ctx.layout.staging_dir)
    deb_dir = reset_dir(ctx.layout.deb_dir)

    image_root = staging / f"linux-image-{version}"
    (image_root / "boot").mkdir(parents=True)
    shutil.copyfile(kernel_image, image_root / "boot" / kernel_image.name)
    write_control(image_root, f"linux-image-{version}", version, arch, f"Linux kernel image {version}")

    headers_root = staging / f"linux-headers-{version}"
    shutil.copytree(
        kernel_tree,
        headers_root / "usr" / "src" / f"linux-headers-{version}",
        symlinks=True,
    )
    write_control(
        headers_root, f"linux-headers-{version}", version, arch, f"Linux kernel headers {version}"
    )

    log_dir = ctx.layout.log_dir
    ctx.outputs["image_deb"] = ctx.toolchain.build_deb(image_root, deb_dir, log_dir)
    ctx.outputs["headers_deb"] = ctx.toolchain.build_deb(headers_root, deb_dir, log_dir)


def build_apt_repo(ctx: StageContext) -> None:
    """Build a portable APT repository from the target's packages."""
    repo_dir = reset_dir(ctx.layout.repo_dir)
    pool = repo_dir / "pool"
    pool.mkdir()

    for key in ("image_deb", "headers_deb"):
        deb = ctx.require_output(key)
        shutil.copyfile(deb, pool / deb.name)

    packages_file = repo_dir / "Packages"
    ctx.toolchain.scan_packages(repo_dir, "pool", packages_file, ctx.layout.log_dir)

    with packages_file.open("rb") as src, gzip.open(repo_dir / "Packages.gz", "wb") as dst:
        shutil.copyfileobj(src, dst)

    ctx.outputs["apt_repo"] = repo_dir


def build_bazel_archive(ctx: StageContext) -> None:
    """Tarball of the packages, ready for Bazel module builds."""
    version = str(ctx.version)
    ctx.require_output("headers_deb")
    ctx.outputs["bazel_archive"] = create_tarball(
        ctx.layout.deb_dir,
        ctx.layout.bazel_archive_dir / f"kernel-{version}-bazel.tar.gz",
        arcname=f"kernel-{version}",
    )


def build_apt_archive(ctx: StageContext) -> None:
    """Tarball of the APT repository."""
    version = str(ctx.version)
    ctx.outputs["apt_archive"] = create_tarball(
        ctx.require_output("apt_repo"),
        ctx.layout.apt_archive_dir / f"kernel-{version}-apt-repo.tar.gz",
        arcname=f"kernel-{version}-apt-repo",
    )


def upload_artifacts(ctx: StageContext) -> None:
    """Upload archives and the kernel image package."""
    ctx.records = ctx.publisher.publish(
        ctx.target,
        str(ctx.version),
        {
            ArtifactKind.BAZEL_ARCHIVE: ctx.require_output("bazel_archive"),
            ArtifactKind.APT_ARCHIVE: ctx.require_output("apt_archive"),
            ArtifactKind.PACKAGE_ARCHIVE: ctx.require_output("image_deb"),
        },
    )


def emit_bazel_meta(ctx: StageContext) -> None:
    """Write this target's manifest fragment."""
    if not ctx.records:
        raise StageError(f"No published artifacts recorded for {ctx.target.name}")
    fragment = fragment_for(ctx.target, ctx.label, str(ctx.version), ctx.records)
    ctx.outputs["fragment"] = write_fragment(
        fragment, fragment_path(ctx.layout.meta_dir, ctx.target)
    )


def default_stages() -> list[Stage]:
    """The canonical compile-and-package stage sequence."""
    return [
        Stage(GENCONFIG, generate_config),
        Stage(COMPILE, compile_kernel),
        Stage(PACKAGE, package_debs),
        Stage(APT_REPO, build_apt_repo),
        Stage(BAZEL_ARCHIVE, build_bazel_archive),
        Stage(APT_ARCHIVE, build_apt_archive),
        Stage(UPLOAD, upload_artifacts),
        Stage(BAZEL_META, emit_bazel_meta),
    ]


__all__ = [
    "APT_ARCHIVE",
    "APT_REPO",
    "BAZEL_ARCHIVE",
    "BAZEL_META",
    "COMPILE",
    "GENCONFIG",
    "PACKAGE",
    "PRUNE_PATTERNS",
    "SOURCE_TREE_LOCK",
    "UPLOAD",
    "build_apt_archive",
    "build_apt_repo",
    "build_bazel_archive",
    "compile_kernel",
    "default_stages",
    "emit_bazel_meta",
    "finalize_kernel_tree",
    "generate_config",
    "package_debs",
    "prune_build_tree",
    "reset_dir",
    "upload_artifacts",
    "write_control",
]
