"""Tests for version.py module.

Tests changelog parsing and canonical kernel version resolution.
"""

import pytest

from kbuild_pipeline.errors import VersionParseError
from kbuild_pipeline.version import (
    ChangelogEntry,
    KernelVersion,
    extract_abi,
    parse_changelog_entry,
    read_changelog,
    resolve,
    version_from_entry,
)

IMPISH_CHANGELOG = """\
linux (5.4.0-100.113) impish; urgency=medium

  * Some change

 -- Kernel Team <kernel@example.com>  Mon, 01 Jan 2022 00:00:00 +0000

linux (5.4.0-99.112) impish; urgency=medium

  * Older change
"""


class TestParseChangelogEntry:
    """Tests for parse_changelog_entry function."""

    def test_first_entry_wins(self):
        """Should parse only the newest entry."""
        entry = parse_changelog_entry(IMPISH_CHANGELOG)
        assert entry == ChangelogEntry(
            package="linux",
            version="5.4.0",
            revision="100.113",
            distribution="impish",
        )

    def test_leading_blank_lines(self):
        """Should skip blank lines before the header."""
        entry = parse_changelog_entry("\n\n" + IMPISH_CHANGELOG)
        assert entry.version == "5.4.0"

    def test_hyphen_in_upstream_version(self):
        """Revision is everything after the last '-'."""
        entry = parse_changelog_entry("linux (5.15.0-rc1-7.8) jammy; urgency=low\n")
        assert entry.version == "5.15.0-rc1"
        assert entry.revision == "7.8"

    def test_empty_changelog(self):
        """Should reject an empty changelog."""
        with pytest.raises(VersionParseError):
            parse_changelog_entry("   \n\n")

    def test_malformed_header(self):
        """Should reject a header that does not match the grammar."""
        with pytest.raises(VersionParseError) as exc_info:
            parse_changelog_entry("this is not a changelog\n")
        assert exc_info.value.code == "version_parse_error"

    def test_missing_revision(self):
        """A native version without '-' is rejected."""
        with pytest.raises(VersionParseError):
            parse_changelog_entry("linux (5.4.0) impish; urgency=medium\n")


class TestExtractAbi:
    """Tests for extract_abi function."""

    @pytest.mark.parametrize(
        ("revision", "expected"),
        [
            ("100.113", "100"),
            ("100", "100"),
            ("100.113~20.04.1", "100"),
            ("100.113+enf2", "100"),
            ("100.113~20.04.1+enf2", "100"),
            ("1.2.3", "1.2"),
        ],
    )
    def test_abi(self, revision, expected):
        assert extract_abi(revision) == expected

    def test_nothing_left(self):
        """Should fail when markers leave nothing behind."""
        with pytest.raises(VersionParseError):
            extract_abi("+local")


class TestResolve:
    """Tests for resolve and version_from_entry."""

    def test_reference_version(self):
        """Reference example: 5.4.0-100-custom-generic."""
        kver = resolve(IMPISH_CHANGELOG, "-custom", "generic")
        assert str(kver) == "5.4.0-100-custom-generic"
        assert kver == KernelVersion(base="5.4.0", abi="100", suffix="-custom", flavour="generic")

    def test_empty_suffix(self):
        kver = resolve(IMPISH_CHANGELOG, "", "lowlatency")
        assert str(kver) == "5.4.0-100-lowlatency"

    def test_pure(self):
        """Same inputs always yield the same version."""
        assert resolve(IMPISH_CHANGELOG, "-x", "generic") == resolve(
            IMPISH_CHANGELOG, "-x", "generic"
        )

    def test_local_markers_never_leak(self):
        """Local-build markers never appear in the resolved version."""
        changelog = "linux-hwe (5.13.0-28.31~20.04.1+enf3) focal; urgency=medium\n"
        kver = resolve(changelog, "-enf", "generic")
        assert str(kver) == "5.13.0-28-enf-generic"
        assert "+" not in str(kver)
        assert "~" not in str(kver)

    def test_bazel_safe(self):
        kver = resolve(IMPISH_CHANGELOG, "-custom", "generic")
        assert kver.bazel_safe == "5_4_0_100_custom_generic"

    def test_empty_flavour(self):
        with pytest.raises(VersionParseError):
            resolve(IMPISH_CHANGELOG, "", "")

    def test_invalid_suffix(self):
        entry = parse_changelog_entry(IMPISH_CHANGELOG)
        with pytest.raises(VersionParseError):
            version_from_entry(entry, "+bad", "generic")


class TestReadChangelog:
    """Tests for read_changelog function."""

    def test_reads_file(self, tmp_path):
        path = tmp_path / "debian.master" / "changelog"
        path.parent.mkdir()
        path.write_text(IMPISH_CHANGELOG)
        assert read_changelog(tmp_path) == IMPISH_CHANGELOG

    def test_missing_file(self, tmp_path):
        with pytest.raises(VersionParseError):
            read_changelog(tmp_path)
