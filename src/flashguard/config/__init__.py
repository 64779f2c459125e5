"""Configuration modules for flashguard."""

from .host import HostOS, default_port, detect_host, list_candidate_ports, port_exists
from .ini_parser import CONFIG_FILENAME, FlashConfigError, FlashIniConfig
from .settings import FlashSettings, load_settings, parse_order

__all__ = [
    "CONFIG_FILENAME",
    "FlashConfigError",
    "FlashIniConfig",
    "FlashSettings",
    "HostOS",
    "default_port",
    "detect_host",
    "list_candidate_ports",
    "load_settings",
    "parse_order",
    "port_exists",
]
