"""Shared fixtures: a minimal kernel tree and a fake toolchain.

The fake toolchain produces the files the real tools would, so the
canonical stages can run end to end without a compiler or dpkg.
"""

from pathlib import Path

import pytest

from kbuild_pipeline.targets import Arch

CHANGELOG = """\
linux (5.4.0-100.113) impish; urgency=medium

  * Some change

 -- Kernel Team <kernel@example.com>  Mon, 01 Jan 2022 00:00:00 +0000
"""


class FakeToolchain:
    """Stands in for Toolchain, recording calls and writing outputs."""

    required_tools: tuple[str, ...] = ()

    def __init__(self, fail_arch: Arch | None = None) -> None:
        self.fail_arch = fail_arch
        self.calls: list[tuple[str, str]] = []

    def generate_configs(self, source_dir: Path, arch: Arch, log_dir: Path) -> None:
        self.calls.append(("genconfigs", arch.value))
        configs = source_dir / "CONFIGS"
        configs.mkdir(exist_ok=True)
        for flavour in ("generic", "lowlatency"):
            (configs / f"{arch.value}-config.flavour.{flavour}").write_text(
                f"CONFIG_{arch.value.upper()}=y\n"
            )

    def build_kernel(
        self,
        source_dir: Path,
        arch: Arch,
        output_dir: Path,
        kernel_release: str,
        parallelism: int,
        log_dir: Path,
    ) -> None:
        from kbuild_pipeline.errors import ToolchainError

        self.calls.append(("make", kernel_release))
        if arch == self.fail_arch:
            raise ToolchainError("make failed with exit code 2", exit_code=2)
        image = output_dir / arch.toolchain.output_image
        image.parent.mkdir(parents=True, exist_ok=True)
        image.write_bytes(b"kernel image " + kernel_release.encode())
        (output_dir / "init").mkdir(exist_ok=True)
        (output_dir / "init" / "main.o").write_bytes(b"obj")
        (output_dir / "init" / ".main.o.cmd").write_text("cmd")
        (output_dir / "include").mkdir(exist_ok=True)
        (output_dir / "include" / "autoconf.h").write_text("#define X 1\n")

    def build_deb(self, package_root: Path, output_dir: Path, log_dir: Path) -> Path:
        self.calls.append(("dpkg-deb", package_root.name))
        deb = output_dir / f"{package_root.name}.deb"
        deb.write_bytes(b"deb " + package_root.name.encode())
        return deb

    def scan_packages(self, repo_dir: Path, pool: str, packages_file: Path, log_dir: Path) -> None:
        self.calls.append(("dpkg-scanpackages", pool))
        names = sorted(p.name for p in (repo_dir / pool).iterdir())
        packages_file.write_text("".join(f"Filename: {pool}/{n}\n\n" for n in names))


@pytest.fixture
def kernel_tree(tmp_path: Path) -> Path:
    """Create a minimal kernel source tree with a Debian changelog."""
    root = tmp_path / "linux"
    (root / "debian.master").mkdir(parents=True)
    (root / "MAINTAINERS").write_text("")
    (root / "Makefile").write_text("all:\n")
    (root / "debian.master" / "changelog").write_text(CHANGELOG)
    return root


@pytest.fixture
def fake_toolchain() -> FakeToolchain:
    return FakeToolchain()


@pytest.fixture
def toolchain_factory() -> type[FakeToolchain]:
    """The fake toolchain class, for tests needing a failing variant."""
    return FakeToolchain
