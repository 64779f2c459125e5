"""Intel HEX conversion.

Converts the linked ELF produced by the compiler into the Intel HEX image the
bootloader programmer expects, using avr-objcopy.
"""

import logging
import subprocess
from pathlib import Path


class ConversionError(Exception):
    """Raised when ELF to HEX conversion fails."""

    pass


class HexConverter:
    """Wraps avr-objcopy for ELF to HEX conversion."""

    def __init__(self, objcopy_cmd: str = "avr-objcopy", timeout: float = 60.0):
        self.objcopy_cmd = objcopy_cmd
        self.timeout = timeout

    def convert(self, elf_path: Path, hex_path: Path | None = None) -> Path:
        """
        Convert .elf to .hex.

        Args:
            elf_path: Input .elf file
            hex_path: Output .hex file (defaults to elf_path with .hex suffix)

        Returns:
            Path to the written .hex file

        Raises:
            ConversionError: If objcopy is missing, fails or times out
        """
        if not elf_path.exists():
            raise ConversionError(f"ELF file not found: {elf_path}")

        if hex_path is None:
            hex_path = elf_path.with_suffix(".hex")

        cmd = [
            self.objcopy_cmd,
            "-O", "ihex",      # Intel HEX format
            "-R", ".eeprom",   # EEPROM is not part of the flash image
            str(elf_path),
            str(hex_path),
        ]
        logging.info(f"Converting {elf_path.name} -> {hex_path.name}")

        try:
            result = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise ConversionError(f"{self.objcopy_cmd} not found. Install avr-gcc (avr-binutils).") from e
        except subprocess.TimeoutExpired as e:
            raise ConversionError(f"{self.objcopy_cmd} timed out after {self.timeout}s") from e

        if result.returncode != 0:
            error_msg = f"{self.objcopy_cmd} failed with exit code {result.returncode}\n"
            error_msg += f"stderr: {result.stderr}\n"
            error_msg += f"stdout: {result.stdout}"
            raise ConversionError(error_msg)

        if not hex_path.exists():
            raise ConversionError(f"HEX file was not created: {hex_path}")

        return hex_path
