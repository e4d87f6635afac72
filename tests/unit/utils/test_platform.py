"""Tests for plugctl.utils.platform module."""

from unittest.mock import patch

from plugctl.utils.platform import expand_platforms, get_os, is_windows, platform_matches


class TestGetOS:
    """Tests for get_os function."""

    def test_returns_valid_os(self):
        """Returns one of the valid OS values."""
        assert get_os() in ("windows", "linux", "macos")

    @patch("platform.system")
    def test_darwin_returns_macos(self, mock_system):
        """Darwin platform returns macos."""
        mock_system.return_value = "Darwin"
        assert get_os() == "macos"

    @patch("platform.system")
    def test_windows_returns_windows(self, mock_system):
        """Windows platform returns windows."""
        mock_system.return_value = "Windows"
        assert get_os() == "windows"
        assert is_windows() is True

    @patch("platform.system")
    def test_unknown_defaults_to_linux(self, mock_system):
        """Other systems are treated as linux."""
        mock_system.return_value = "FreeBSD"
        assert get_os() == "linux"


class TestPlatformMatching:
    """Tests for expand_platforms and platform_matches."""

    def test_aliases_expand(self):
        """Manifest aliases map onto detected OS names."""
        assert expand_platforms(["Darwin", "win32"]) == {"macos", "windows"}
        assert expand_platforms(["unix"]) == {"linux", "macos"}

    def test_unknown_names_ignored(self):
        """Unknown platform names match nothing."""
        assert expand_platforms(["beos"]) == set()
        assert not platform_matches("linux", ["beos"])

    def test_matches_host(self):
        """The host matches when any declared platform covers it."""
        assert platform_matches("macos", ["posix"])
        assert not platform_matches("windows", ["linux", "macos"])
