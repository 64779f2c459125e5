"""CLI utility functions for flashguard.

This module provides common utilities used by the flash command including:
- External tool checks with install hints
- Error handling and formatting
- Banner output
"""

import shutil
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .config.settings import FlashSettings

# Install hints for the tools the default toolchain needs
INSTALL_HINTS = {
    "cargo": "Install Rust with rustup: https://rustup.rs",
    "avr-objcopy": "Install the AVR toolchain (macOS: brew install avr-gcc, Debian/Ubuntu: sudo apt-get install binutils-avr)",
    "avrdude": "Install avrdude (macOS: brew install avrdude, Debian/Ubuntu: sudo apt-get install avrdude)",
}


@dataclass
class MissingTool:
    """An external executable that could not be found."""

    role: str
    command: str
    hint: str


class ToolChecker:
    """Checks that the compiler, converter and programmer are installed."""

    def __init__(self, which: Callable[[str], str | None] | None = None):
        self.which = which or shutil.which

    def required_tools(self, settings: FlashSettings) -> list[tuple[str, str]]:
        return [
            ("compiler", settings.compiler),
            ("converter", settings.objcopy),
            ("programmer", settings.programmer),
        ]

    def missing(self, settings: FlashSettings) -> list[MissingTool]:
        """Return every required tool that is not on PATH."""
        missing = []
        for role, command in self.required_tools(settings):
            if self.which(command) is None:
                name = Path(command).name
                hint = INSTALL_HINTS.get(name, f"Make sure '{command}' is installed and on PATH")
                missing.append(MissingTool(role=role, command=command, hint=hint))
        return missing


class ErrorFormatter:
    """Formats and displays messages with ANSI color codes."""

    # ANSI color codes
    RED = "\033[1;31m"
    GREEN = "\033[1;32m"
    YELLOW = "\033[1;33m"
    RESET = "\033[0m"

    # Likely cause and remediation per exit code
    HINTS = {
        1: [
            "Check that the board is connected to the port shown above",
            "Close serial monitors or IDEs that may hold the port",
            "Unplug and reconnect the board, then retry",
        ],
        2: [
            "The flash job did not finish in time and was stopped",
            "Unplug and reconnect the board, then retry (use -t to allow more time)",
        ],
        3: [
            "Check the port name (FLASHGUARD_PORT overrides the default)",
            "Check that the required tools are installed",
        ],
    }

    @staticmethod
    def print_error(title: str, message: str) -> None:
        """Print formatted error message.

        Args:
            title: Error title (e.g., "Port not found", "Flash failed")
            message: Error message details
        """
        print()
        print(f"{ErrorFormatter.RED}✗ {title}{ErrorFormatter.RESET}")
        print()
        print(message)
        print()

    @staticmethod
    def print_success(message: str) -> None:
        print()
        print(f"{ErrorFormatter.GREEN}✓ {message}{ErrorFormatter.RESET}")

    @staticmethod
    def print_warning(message: str) -> None:
        print()
        print(f"{ErrorFormatter.YELLOW}✗ {message}{ErrorFormatter.RESET}")

    @staticmethod
    def print_hints(exit_code: int, log_path: Path | None = None) -> None:
        """Print remediation hints and the log location."""
        for hint in ErrorFormatter.HINTS.get(exit_code, []):
            print(f"  - {hint}")
        if log_path is not None:
            print()
            print(f"Log: {log_path}")

    @staticmethod
    def handle_config_error(error: Exception) -> None:
        ErrorFormatter.print_error("Error: Invalid configuration", str(error))
        sys.exit(3)

    @staticmethod
    def handle_keyboard_interrupt() -> None:
        """Handle KeyboardInterrupt with standard formatting."""
        ErrorFormatter.print_warning("Flash interrupted, session stopped")
        sys.exit(130)  # Standard exit code for SIGINT

    @staticmethod
    def handle_unexpected_error(error: Exception, verbose: bool = False) -> None:
        """Handle unexpected errors with standard formatting.

        Args:
            error: The exception to handle
            verbose: Whether to print traceback
        """
        message = f"{type(error).__name__}: {error}"
        ErrorFormatter.print_error("Unexpected error", message)

        if verbose:
            import traceback

            print("Traceback:")
            print(traceback.format_exc())

        sys.exit(1)


class BannerFormatter:
    """Formats and displays banner messages with borders."""

    DEFAULT_WIDTH = 60
    DEFAULT_BORDER_CHAR = "="

    @staticmethod
    def format_banner(message: str, width: int = DEFAULT_WIDTH, border_char: str = DEFAULT_BORDER_CHAR) -> str:
        """Format a left-aligned banner with top and bottom borders."""
        border = border_char * width
        return "\n".join([border, *("  " + line for line in message.split("\n")), border])

    @staticmethod
    def print_banner(message: str, width: int = DEFAULT_WIDTH, border_char: str = DEFAULT_BORDER_CHAR) -> None:
        print()
        print(BannerFormatter.format_banner(message, width=width, border_char=border_char))


class PathValidator:
    """Validates project paths and directories."""

    @staticmethod
    def validate_project_dir(project_dir: Path) -> None:
        """Validate that project directory exists and is a directory.

        Raises:
            SystemExit: If path doesn't exist or isn't a directory
        """
        if not project_dir.exists():
            print(f"{ErrorFormatter.RED}✗ Error: Path does not exist: {project_dir}{ErrorFormatter.RESET}")
            sys.exit(3)
        if not project_dir.is_dir():
            print(f"{ErrorFormatter.RED}✗ Error: Path is not a directory: {project_dir}{ErrorFormatter.RESET}")
            sys.exit(3)
