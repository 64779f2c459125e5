"""
flashguard.ini configuration parser.

Example flashguard.ini:
    [flash]
    board_dir = boards/arduino-uno
    target_dir = target/avr-none/release
    strategy_order = stk500v1, arduino
    timeout = 300

    [strategy:nano-old]
    programmer = arduino
    baud = 57600
    mcu = atmega328p
    extra_args = -V

Usage:
    config = FlashIniConfig(Path("flashguard.ini"))
    options = config.get_flash_options()
    strategies = config.get_strategies()
"""

import configparser
import shlex
from pathlib import Path

from ..deploy.programmer import DEFAULT_SUCCESS_PATTERN, StrategyConfig

CONFIG_FILENAME = "flashguard.ini"


class FlashConfigError(Exception):
    """Exception raised for flashguard.ini configuration errors."""

    pass


class FlashIniConfig:
    """
    Parser for flashguard.ini files.

    The [flash] section carries scalar options; each [strategy:<name>]
    section declares (or overrides) one programmer strategy.
    """

    STRATEGY_REQUIRED_FIELDS = {"programmer", "baud"}

    def __init__(self, ini_path: Path):
        """
        Initialize the parser with a flashguard.ini file.

        Args:
            ini_path: Path to the ini file

        Raises:
            FlashConfigError: If the file doesn't exist or cannot be parsed
        """
        self.ini_path = ini_path

        if not ini_path.exists():
            raise FlashConfigError(f"Configuration file not found: {ini_path}")

        self.config = configparser.ConfigParser(allow_no_value=True, interpolation=configparser.ExtendedInterpolation())

        try:
            self.config.read(ini_path, encoding="utf-8")
        except configparser.Error as e:
            raise FlashConfigError(f"Failed to parse {ini_path}: {e}") from e

    def get_flash_options(self) -> dict[str, str]:
        """
        Get the [flash] section as a plain dictionary.

        Returns:
            Option name to stripped string value (empty if the section is absent)
        """
        if "flash" not in self.config:
            return {}
        try:
            return {key: (value or "").strip() for key, value in self.config["flash"].items()}
        except configparser.Error as e:
            raise FlashConfigError(f"Invalid [flash] section in {self.ini_path}: {e}") from e

    def get_strategy_names(self) -> list[str]:
        """
        Get the names of all declared strategies.

        Example:
            For [strategy:arduino], [strategy:nano-old], returns ['arduino', 'nano-old']
        """
        names = []
        for section in self.config.sections():
            if section.startswith("strategy:"):
                names.append(section.split(":", 1)[1].strip())
        return names

    def get_strategies(self) -> dict[str, StrategyConfig]:
        """
        Parse all [strategy:<name>] sections.

        Raises:
            FlashConfigError: If a section misses required fields or has a bad baud rate
        """
        strategies: dict[str, StrategyConfig] = {}
        for name in self.get_strategy_names():
            section = self.config[f"strategy:{name}"]

            missing_fields = self.STRATEGY_REQUIRED_FIELDS - set(section.keys())
            if missing_fields:
                raise FlashConfigError(f"Strategy '{name}' is missing required fields: " + f"{', '.join(sorted(missing_fields))}")

            try:
                baud = int(section["baud"])
            except ValueError as e:
                raise FlashConfigError(f"Strategy '{name}' has an invalid baud rate: {section['baud']}") from e

            strategies[name] = StrategyConfig(
                name=name,
                programmer=section["programmer"].strip(),
                baud=baud,
                mcu=section.get("mcu", "atmega328p").strip(),
                extra_args=shlex.split(section.get("extra_args", "") or ""),
                success_pattern=(section.get("success_pattern", "") or "").strip() or DEFAULT_SUCCESS_PATTERN,
            )
        return strategies
