"""Manifest fragments and their aggregation.

Each target writes one fragment file describing what it published. Once
every target has finished, the fragments are merged into one combined
manifest consumed by Bazel::

    KERNEL_TREE_AMD64_DEV_generic = "kernel/master/amd64-generic/bazel-archive/..."

Fragments are keyed by (label, arch, flavour). Merging is order
independent; a key defined twice with different values is an error.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kbuild_pipeline.errors import ManifestConflictError, PipelineError
from kbuild_pipeline.targets import TargetSpec
from kbuild_pipeline.types import ArtifactKind, ArtifactRecord

logger = logging.getLogger(__name__)

MANIFEST_HEADER = "# Automatically generated: don't edit"
FRAGMENT_SUFFIX = ".json"

# Variable stem per published artifact kind
KIND_VARIABLES: dict[ArtifactKind, str] = {
    ArtifactKind.BAZEL_ARCHIVE: "KERNEL_TREE",
    ArtifactKind.APT_ARCHIVE: "KERNEL_APT_REPO",
    ArtifactKind.PACKAGE_ARCHIVE: "KERNEL_IMAGE_DEB",
}
VERSION_VARIABLE = "KERNEL_VERSION"

ManifestKey = tuple[str, str, str]


@dataclass(frozen=True)
class ManifestFragment:
    """Metadata published by one target."""

    label: str
    arch: str
    flavour: str
    version: str
    variables: dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> ManifestKey:
        return (self.label, self.arch, self.flavour)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "label": self.label,
            "arch": self.arch,
            "flavour": self.flavour,
            "version": self.version,
            "variables": dict(self.variables),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManifestFragment:
        try:
            return cls(
                label=str(data["label"]),
                arch=str(data["arch"]),
                flavour=str(data["flavour"]),
                version=str(data["version"]),
                variables={str(k): str(v) for k, v in data.get("variables", {}).items()},
            )
        except (KeyError, AttributeError) as e:
            raise PipelineError(f"Malformed manifest fragment: {e}") from e


@dataclass
class Manifest:
    """Combined manifest: variables per (label, arch, flavour)."""

    entries: dict[ManifestKey, dict[str, str]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.entries)

    def iter_lines(self) -> Iterable[tuple[str, str]]:
        for key in sorted(self.entries):
            label, arch, flavour = key
            for variable, value in sorted(self.entries[key].items()):
                yield variable_name(variable, label, arch, flavour), value


def _identifier(part: str) -> str:
    return part.replace("-", "_").replace(".", "_").replace("~", "_")


def _name_suffix(label: str, arch: str, flavour: str) -> str:
    return "_".join((_identifier(arch).upper(), _identifier(label).upper(), _identifier(flavour)))


def variable_name(variable: str, label: str, arch: str, flavour: str) -> str:
    """Render ``<VARIABLE>_<ARCH>_<LABEL>_<flavour>`` as a Bazel identifier."""
    return f"{_identifier(variable)}_{_name_suffix(label, arch, flavour)}"


def fragment_for(
    target: TargetSpec,
    label: str,
    version: str,
    records: Sequence[ArtifactRecord],
) -> ManifestFragment:
    """Describe a target's published artifacts as a fragment."""
    variables = {VERSION_VARIABLE: version}
    for record in records:
        stem = KIND_VARIABLES[record.kind]
        variables[stem] = record.storage_path
        variables[f"{stem}_SHA256"] = record.checksum

    return ManifestFragment(
        label=label,
        arch=target.arch.value,
        flavour=target.flavour,
        version=version,
        variables=variables,
    )


def fragment_path(meta_dir: Path, target: TargetSpec) -> Path:
    return meta_dir / f"{target.name}{FRAGMENT_SUFFIX}"


def remove_fragment(meta_dir: Path, target: TargetSpec) -> None:
    """Drop a fragment left behind by an earlier run of a target."""
    path = fragment_path(meta_dir, target)
    if path.exists():
        logger.debug("Removing stale fragment %s", path)
        path.unlink()


def write_fragment(fragment: ManifestFragment, path: Path) -> Path:
    """Write a fragment file.

    The file is written under a temporary name and renamed into place, so
    readers never see a partial fragment.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump(fragment.to_dict(), f, indent=2, sort_keys=True)
    os.replace(tmp_path, path)
    logger.info("Wrote manifest fragment %s", path)
    return path


def load_fragment(path: Path) -> ManifestFragment:
    """Load one fragment file.

    Raises:
        PipelineError: If the file is unreadable or malformed.
    """
    try:
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise PipelineError(f"Unable to read manifest fragment {path}: {e}") from e
    if not isinstance(data, dict):
        raise PipelineError(f"Malformed manifest fragment: {path}")
    return ManifestFragment.from_dict(data)


def load_fragments(meta_dir: Path) -> list[ManifestFragment]:
    """Load every fragment in a directory, in file name order."""
    return [load_fragment(path) for path in sorted(meta_dir.glob(f"*{FRAGMENT_SUFFIX}"))]


def aggregate(fragments: Iterable[ManifestFragment]) -> Manifest:
    """Merge fragments into one manifest.

    Args:
        fragments: Fragments in any order.

    Returns:
        The combined Manifest.

    Raises:
        ManifestConflictError: If two fragments define the same key with
            different variables, or two distinct keys render to the same
            variable names. Identical duplicates are accepted.
    """
    entries: dict[ManifestKey, dict[str, str]] = {}
    rendered: dict[str, ManifestKey] = {}
    for fragment in fragments:
        existing = entries.get(fragment.key)
        if existing is None:
            suffix = _name_suffix(*fragment.key)
            other = rendered.setdefault(suffix, fragment.key)
            if other != fragment.key:
                raise ManifestConflictError(
                    fragment.key, entries[other], dict(fragment.variables), other_key=other
                )
            entries[fragment.key] = dict(fragment.variables)
        elif existing != fragment.variables:
            raise ManifestConflictError(fragment.key, existing, dict(fragment.variables))
    return Manifest(entries=entries)


def render_manifest(manifest: Manifest) -> str:
    """Render the manifest as Bazel-loadable assignments."""
    lines = [MANIFEST_HEADER, ""]
    lines.extend(f"{name} = {json.dumps(value)}" for name, value in manifest.iter_lines())
    return "\n".join(lines) + "\n"


def write_manifest(manifest: Manifest, output_path: Path) -> Path:
    """Write the rendered manifest file."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = output_path.with_name(f".{output_path.name}.tmp")
    tmp_path.write_text(render_manifest(manifest), encoding="utf-8")
    os.replace(tmp_path, output_path)
    logger.info("Wrote manifest with %d entries to %s", len(manifest), output_path)
    return output_path


__all__ = [
    "KIND_VARIABLES",
    "MANIFEST_HEADER",
    "VERSION_VARIABLE",
    "Manifest",
    "ManifestFragment",
    "aggregate",
    "fragment_for",
    "fragment_path",
    "load_fragment",
    "load_fragments",
    "remove_fragment",
    "render_manifest",
    "variable_name",
    "write_fragment",
    "write_manifest",
]
