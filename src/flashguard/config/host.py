"""
Host operating system detection and serial port defaults.

All OS-specific decisions in flashguard go through the HostOS enum returned by
detect_host(); nothing else inspects platform strings.
"""

import glob
import os
import platform
from enum import Enum
from pathlib import Path


class HostOS(Enum):
    """Host operating system family."""

    MACOS = "macos"
    LINUX = "linux"
    WINDOWS = "windows"
    UNKNOWN = "unknown"

    @property
    def is_posix(self) -> bool:
        return self in (HostOS.MACOS, HostOS.LINUX, HostOS.UNKNOWN)


# Glob patterns tried in order when no port was given
PORT_PATTERNS: dict[HostOS, list[str]] = {
    HostOS.MACOS: ["/dev/cu.usbmodem*", "/dev/cu.usbserial*", "/dev/cu.wchusbserial*"],
    HostOS.LINUX: ["/dev/ttyACM*", "/dev/ttyUSB*"],
    HostOS.UNKNOWN: ["/dev/ttyACM*", "/dev/ttyUSB*"],
}

FALLBACK_PORTS: dict[HostOS, str] = {
    HostOS.MACOS: "/dev/cu.usbmodem14401",
    HostOS.LINUX: "/dev/ttyUSB0",
    HostOS.WINDOWS: "COM3",
    HostOS.UNKNOWN: "/dev/ttyUSB0",
}

PORT_ENV_VAR = "FLASHGUARD_PORT"


def detect_host(system: str | None = None) -> HostOS:
    """Detect the host operating system.

    Args:
        system: Value of platform.system() (detected when None)

    Returns:
        HostOS enum member
    """
    name = (system if system is not None else platform.system()).lower()
    if name == "darwin":
        return HostOS.MACOS
    if name == "linux":
        return HostOS.LINUX
    if name == "windows" or name.startswith(("cygwin", "msys", "mingw")):
        return HostOS.WINDOWS
    return HostOS.UNKNOWN


def _list_windows_ports() -> list[str]:
    from serial.tools import list_ports

    return sorted(info.device for info in list_ports.comports())


def default_port(host: HostOS, env: dict[str, str] | None = None) -> str:
    """Pick the serial port to use when the caller did not name one.

    Resolution order: FLASHGUARD_PORT, the first device matching the host's
    patterns, then a fixed per-host fallback.
    """
    environ = os.environ if env is None else env
    override = environ.get(PORT_ENV_VAR, "").strip()
    if override:
        return override

    if host == HostOS.WINDOWS:
        ports = _list_windows_ports()
        if ports:
            return ports[0]
    else:
        for pattern in PORT_PATTERNS[host]:
            matches = sorted(glob.glob(pattern))
            if matches:
                return matches[0]

    return FALLBACK_PORTS[host]


def list_candidate_ports(host: HostOS) -> list[str]:
    """List serial devices that look like attached boards."""
    if host == HostOS.WINDOWS:
        return _list_windows_ports()
    found: list[str] = []
    for pattern in PORT_PATTERNS[host]:
        found.extend(sorted(glob.glob(pattern)))
    return found


def port_exists(port: str, host: HostOS) -> bool:
    """Check that a serial device is currently present."""
    if host == HostOS.WINDOWS:
        return port.upper() in (p.upper() for p in _list_windows_ports())
    return Path(port).exists()
