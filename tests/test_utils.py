"""Unit tests for utility functions."""

import hashlib

import pytest

from quickmirror.utils import (
    file_digest,
    format_duration,
    format_size,
    parse_backdate,
    substitute_mdir,
)


class TestParseBackdate:
    """Tests for parse_backdate function."""

    def test_epoch_seconds(self):
        """Test a plain integer is taken as epoch seconds."""
        assert parse_backdate("1458066125") == 1458066125

    def test_iso_utc(self):
        """Test an ISO 8601 date with Z suffix."""
        assert parse_backdate("2025-01-15T10:30:00Z") == 1736937000

    def test_iso_offset(self):
        """Test an ISO 8601 date with explicit offset."""
        assert parse_backdate("2025-01-15T12:30:00+02:00") == 1736937000

    @pytest.mark.parametrize("value", [None, "", "yesterday", "2025-13-45"])
    def test_invalid(self, value):
        """Test unparseable values yield None."""
        assert parse_backdate(value) is None


class TestFormatSize:
    """Tests for format_size function."""

    @pytest.mark.parametrize(
        "size,expected",
        [
            (None, "?"),
            (0, "0B"),
            (256, "256B"),
            (1536, "1.50KB"),
            (1024 * 1024, "1.00MB"),
            (5 * 1024**3, "5.00GB"),
        ],
    )
    def test_format_size(self, size, expected):
        """Test formatting of byte counts."""
        assert format_size(size) == expected


class TestFormatDuration:
    """Tests for format_duration function."""

    @pytest.mark.parametrize(
        "seconds,expected",
        [(None, "?"), (12, "12s"), (210, "3.50m"), (4500, "1.25h")],
    )
    def test_format_duration(self, seconds, expected):
        """Test formatting of durations."""
        assert format_duration(seconds) == expected


class TestFileDigest:
    """Tests for file_digest function."""

    def test_sha1_default(self, tmp_path):
        """Test the default algorithm is sha1."""
        path = tmp_path / "f"
        path.write_bytes(b"content")
        assert file_digest(path) == hashlib.sha1(b"content").hexdigest()

    def test_other_algorithm(self, tmp_path):
        """Test any hashlib algorithm can be used."""
        path = tmp_path / "f"
        path.write_bytes(b"content")
        assert file_digest(path, "sha256") == hashlib.sha256(b"content").hexdigest()


class TestSubstituteMdir:
    """Tests for substitute_mdir function."""

    def test_braces(self):
        """Test the {mdir} placeholder."""
        assert substitute_mdir("imagelist-{mdir}", "epel") == "imagelist-epel"

    def test_shell_style(self):
        """Test the $mdir placeholder."""
        assert substitute_mdir("fullfiletimelist-$mdir", "alt") == (
            "fullfiletimelist-alt"
        )

    def test_no_placeholder(self):
        """Test templates without a placeholder are unchanged."""
        assert substitute_mdir("fullfilelist", "epel") == "fullfilelist"
