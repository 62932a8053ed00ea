"""Target specifications: architecture x flavour pairs.

The supported architectures are a closed set. Each one carries the
toolchain arguments and output image path the kernel build needs, so
adding an architecture is a code change here and nowhere else.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from kbuild_pipeline.errors import InvalidTargetError

FLAVOUR_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")


@dataclass(frozen=True)
class ArchToolchain:
    """Per-architecture kernel build parameters.

    Attributes:
        make_args: Extra make variables (cross compilation).
        image_target: Make target producing the boot image.
        output_image: Image path relative to the build output directory.
    """

    make_args: tuple[str, ...]
    image_target: str
    output_image: str


class Arch(str, Enum):
    """Supported kernel architectures (Debian names)."""

    AMD64 = "amd64"
    ARM64 = "arm64"

    @property
    def toolchain(self) -> ArchToolchain:
        return _ARCH_TOOLCHAINS[self]


_ARCH_TOOLCHAINS: dict[Arch, ArchToolchain] = {
    Arch.AMD64: ArchToolchain(
        make_args=(),
        image_target="bzImage",
        output_image="arch/x86/boot/bzImage",
    ),
    Arch.ARM64: ArchToolchain(
        make_args=("ARCH=arm64", "CROSS_COMPILE=aarch64-linux-gnu-"),
        image_target="Image",
        output_image="arch/arm64/boot/Image",
    ),
}

SUPPORTED_ARCHES = tuple(a.value for a in Arch)


@dataclass(frozen=True)
class TargetSpec:
    """One buildable kernel configuration."""

    arch: Arch
    flavour: str

    @property
    def name(self) -> str:
        """Target name used for workspace and upload paths."""
        return f"{self.arch.value}-{self.flavour}"

    def __str__(self) -> str:
        return f"{self.arch.value},{self.flavour}"


def parse_target(raw: str) -> TargetSpec:
    """Parse an ``"<arch>,<flavour>"`` string.

    Args:
        raw: Target spec string.

    Returns:
        TargetSpec instance.

    Raises:
        InvalidTargetError: If arch is unsupported or flavour is empty/invalid.
    """
    parts = [p.strip() for p in raw.split(",")]
    if len(parts) != 2:
        raise InvalidTargetError(raw, "expected '<arch>,<flavour>'")

    arch_name, flavour = parts
    try:
        arch = Arch(arch_name)
    except ValueError:
        raise InvalidTargetError(
            raw,
            f"unsupported architecture {arch_name!r}, "
            f"supported: {', '.join(SUPPORTED_ARCHES)}",
        ) from None

    if not flavour:
        raise InvalidTargetError(raw, "flavour must not be empty")
    if not FLAVOUR_PATTERN.match(flavour):
        raise InvalidTargetError(raw, f"invalid flavour {flavour!r}")

    return TargetSpec(arch=arch, flavour=flavour)


def parse_targets(raws: Iterable[str]) -> list[TargetSpec]:
    """Parse every target spec before anything is built.

    Args:
        raws: Target spec strings.

    Returns:
        TargetSpecs in the order given.

    Raises:
        InvalidTargetError: On the first invalid or duplicate entry, or
            when no target is given.
    """
    targets: list[TargetSpec] = []
    for raw in raws:
        target = parse_target(raw)
        if target in targets:
            raise InvalidTargetError(raw, "duplicate target")
        targets.append(target)

    if not targets:
        raise InvalidTargetError("", "at least one target is required")
    return targets


__all__ = [
    "SUPPORTED_ARCHES",
    "Arch",
    "ArchToolchain",
    "TargetSpec",
    "parse_target",
    "parse_targets",
]
