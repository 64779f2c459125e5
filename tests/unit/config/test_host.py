"""Unit tests for host detection and default port selection."""

from pathlib import Path
from unittest.mock import patch

import pytest

from flashguard.config.host import FALLBACK_PORTS, HostOS, default_port, detect_host, port_exists


class TestDetectHost:
    """Tests for detect_host."""

    @pytest.mark.parametrize(
        "system,expected",
        [
            ("Darwin", HostOS.MACOS),
            ("Linux", HostOS.LINUX),
            ("Windows", HostOS.WINDOWS),
            ("MSYS_NT-10.0", HostOS.WINDOWS),
            ("FreeBSD", HostOS.UNKNOWN),
        ],
    )
    def test_detect(self, system, expected):
        assert detect_host(system) == expected

    def test_posix_flag(self):
        assert HostOS.LINUX.is_posix
        assert HostOS.MACOS.is_posix
        assert not HostOS.WINDOWS.is_posix


class TestDefaultPort:
    """Tests for default_port."""

    def test_env_override(self):
        """Test FLASHGUARD_PORT wins over detection."""
        assert default_port(HostOS.LINUX, env={"FLASHGUARD_PORT": "/dev/ttyACM7"}) == "/dev/ttyACM7"

    def test_first_matching_device(self):
        """Test the first device of the first matching pattern is used."""

        def fake_glob(pattern):
            return {"/dev/ttyACM*": [], "/dev/ttyUSB*": ["/dev/ttyUSB1", "/dev/ttyUSB0"]}[pattern]

        with patch("flashguard.config.host.glob.glob", side_effect=fake_glob):
            assert default_port(HostOS.LINUX, env={}) == "/dev/ttyUSB0"

    def test_fallbacks(self):
        """Test the fixed per-host fallback when nothing is attached."""
        with patch("flashguard.config.host.glob.glob", return_value=[]):
            assert default_port(HostOS.MACOS, env={}) == "/dev/cu.usbmodem14401"
            assert default_port(HostOS.LINUX, env={}) == "/dev/ttyUSB0"
        with patch("flashguard.config.host._list_windows_ports", return_value=[]):
            assert default_port(HostOS.WINDOWS, env={}) == FALLBACK_PORTS[HostOS.WINDOWS] == "COM3"

    def test_windows_first_com_port(self):
        with patch("flashguard.config.host._list_windows_ports", return_value=["COM4", "COM9"]):
            assert default_port(HostOS.WINDOWS, env={}) == "COM4"


class TestPortExists:
    """Tests for port_exists."""

    def test_posix_path(self, tmp_path: Path):
        device = tmp_path / "ttyFAKE0"
        assert not port_exists(str(device), HostOS.LINUX)
        device.write_text("")
        assert port_exists(str(device), HostOS.LINUX)

    def test_windows_case_insensitive(self):
        with patch("flashguard.config.host._list_windows_ports", return_value=["COM3"]):
            assert port_exists("com3", HostOS.WINDOWS)
            assert not port_exists("COM5", HostOS.WINDOWS)
