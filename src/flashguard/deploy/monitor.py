"""
Post-flash serial capture.

After a successful flash, firmware that talks over Serial can be observed for a
few seconds. The captured bytes are written to a per-job file and a pointer
file names the most recent capture.
"""

import logging
import time
from pathlib import Path

import serial


class SerialCapture:
    """Reads a serial port for a bounded time into a file."""

    def __init__(self, baud: int = 9600, seconds: float = 10.0):
        self.baud = baud
        self.seconds = seconds

    @staticmethod
    def source_uses_serial(source_file: Path) -> bool:
        """Check whether a firmware source file mentions Serial."""
        try:
            return "Serial" in source_file.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return False

    def capture(self, port: str, output_file: Path, latest_pointer: Path | None = None) -> Path | None:
        """
        Capture serial output.

        Args:
            port: Serial port to read
            output_file: File receiving the raw text
            latest_pointer: Optional file updated with output_file's path

        Returns:
            output_file on success, None if the port could not be read
        """
        output_file.parent.mkdir(parents=True, exist_ok=True)
        logging.info(f"Capturing serial output from {port} at {self.baud} baud for {self.seconds}s")

        deadline = time.monotonic() + self.seconds
        try:
            with serial.Serial(port, self.baud, timeout=0.2) as ser, open(output_file, "wb") as out:
                while time.monotonic() < deadline:
                    chunk = ser.read(256)
                    if chunk:
                        out.write(chunk)
                        out.flush()
        except (serial.SerialException, OSError) as e:
            logging.warning(f"Serial capture on {port} failed: {e}")
            return None

        if latest_pointer is not None:
            latest_pointer.write_text(str(output_file))

        logging.info(f"Serial output saved to: {output_file}")
        return output_file
