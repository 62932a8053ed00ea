"""Kernel version resolution from Debian changelog metadata.

Only the first changelog entry is read ("latest version wins"). Its
header line must follow::

    <package> (<version>-<revision>) <distribution>; urgency=<urgency>

The canonical kernel version is ``{version}-{abi}{suffix}-{flavour}``,
where ``abi`` is the revision without local-build markers (``+...``,
``~...``) and without its final ``.`` component, mimicking what the
Debian kernel packaging does.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from kbuild_pipeline.errors import VersionParseError

# <package> (<version-revision>) <rest>
CHANGELOG_HEADER_PATTERN = re.compile(
    r"^(?P<package>[a-z0-9][a-z0-9.+\-]+)\s+\((?P<full_version>[^()\s]+)\)\s*(?P<rest>.*)$"
)
VERSION_COMPONENT_PATTERN = re.compile(r"^[A-Za-z0-9._\-]*$")
LOCAL_MARKERS = ("+", "~")
BAZEL_UNSAFE_CHARS = str.maketrans({".": "_", "-": "_", "~": "_"})


@dataclass(frozen=True)
class ChangelogEntry:
    """Header fields of a Debian changelog entry."""

    package: str
    version: str
    revision: str
    distribution: str | None = None


@dataclass(frozen=True)
class KernelVersion:
    """Canonical kernel version for one flavour."""

    base: str
    abi: str
    suffix: str
    flavour: str

    def __str__(self) -> str:
        return f"{self.base}-{self.abi}{self.suffix}-{self.flavour}"

    @property
    def bazel_safe(self) -> str:
        """Version with characters Bazel identifiers reject replaced."""
        return str(self).translate(BAZEL_UNSAFE_CHARS)


def parse_changelog_entry(changelog_text: str) -> ChangelogEntry:
    """Parse the header line of the first changelog entry.

    Args:
        changelog_text: Full changelog file contents.

    Returns:
        ChangelogEntry for the newest entry.

    Raises:
        VersionParseError: If the header does not match the grammar.
    """
    first_line = next(
        (line.strip() for line in changelog_text.splitlines() if line.strip()),
        None,
    )
    if first_line is None:
        raise VersionParseError("Changelog is empty")

    match = CHANGELOG_HEADER_PATTERN.match(first_line)
    if match is None:
        raise VersionParseError(
            f"First changelog entry does not match "
            f"'<package> (<version>-<revision>) ...': {first_line!r}"
        )

    full_version = match.group("full_version")
    version, sep, revision = full_version.rpartition("-")
    if not sep or not version or not revision:
        raise VersionParseError(
            f"Changelog version {full_version!r} has no '-' "
            "separating upstream version and revision"
        )

    distribution = match.group("rest").split(";", 1)[0].strip() or None

    return ChangelogEntry(
        package=match.group("package"),
        version=version,
        revision=revision,
        distribution=distribution,
    )


def extract_abi(revision: str) -> str:
    """Extract the ABI number from a Debian revision.

    ``100.113`` -> ``100``; ``100.113~20.04.1+enf2`` -> ``100``.

    Args:
        revision: Revision field of the changelog version.

    Returns:
        ABI component.

    Raises:
        VersionParseError: If nothing is left after stripping markers.
    """
    stripped = revision
    for marker in LOCAL_MARKERS:
        stripped = stripped.split(marker, 1)[0]

    abi = stripped.rsplit(".", 1)[0] if "." in stripped else stripped
    if not abi:
        raise VersionParseError(f"Unable to extract ABI from revision {revision!r}")
    return abi


def _check_component(name: str, value: str) -> None:
    if not VERSION_COMPONENT_PATTERN.match(value):
        raise VersionParseError(
            f"Invalid {name} {value!r}: only letters, digits, '.', '_' and '-' "
            "are allowed"
        )


def version_from_entry(entry: ChangelogEntry, suffix: str, flavour: str) -> KernelVersion:
    """Build a KernelVersion from an already parsed changelog entry."""
    _check_component("upstream version", entry.version)
    _check_component("version suffix", suffix)
    if not flavour:
        raise VersionParseError("Flavour must not be empty")
    _check_component("flavour", flavour)

    return KernelVersion(
        base=entry.version,
        abi=extract_abi(entry.revision),
        suffix=suffix,
        flavour=flavour,
    )


def resolve(changelog_text: str, suffix: str, flavour: str) -> KernelVersion:
    """Resolve the canonical kernel version.

    Pure function: the same inputs always produce the same version.

    Args:
        changelog_text: Full changelog file contents.
        suffix: Caller-supplied version suffix (may be empty).
        flavour: Kernel flavour.

    Returns:
        KernelVersion instance.

    Raises:
        VersionParseError: If the changelog or inputs are invalid.
    """
    return version_from_entry(parse_changelog_entry(changelog_text), suffix, flavour)


def read_changelog(source_dir: Path, changelog_path: str = "debian.master/changelog") -> str:
    """Read the changelog from a kernel tree.

    Raises:
        VersionParseError: If the changelog cannot be read.
    """
    path = source_dir / changelog_path
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise VersionParseError(f"Unable to read changelog {path}: {e}") from e


__all__ = [
    "ChangelogEntry",
    "KernelVersion",
    "extract_abi",
    "parse_changelog_entry",
    "read_changelog",
    "resolve",
    "version_from_entry",
]
