"""
Serial port recovery.

Frees a serial device held by stale or crashed processes and resets its
line-control state so the next caller can open it.

Two entry points:
- ensure_free(): find holder processes, SIGTERM, wait, escalate to SIGKILL.
  Raises RecoveryFailure only if the port is still held after escalation.
- force_release(): ensure_free() (best effort) plus a line reset: set HUPCL
  and bounce the baud rate so the kernel drops serial state that can outlive
  the programmer process. Never raises.
"""

import logging
import os
import subprocess
import time
from collections.abc import Callable

import psutil
import serial

from ..config.host import HostOS, detect_host, port_exists

try:
    import termios
except ImportError:  # Windows has no termios; HUPCL is POSIX only
    termios = None  # type: ignore[assignment]


class RecoveryFailure(Exception):
    """Raised when a serial port could not be freed."""

    pass


class PortRecoveryManager:
    """Detects and releases processes holding a serial port."""

    def __init__(
        self,
        grace_seconds: float = 2.0,
        reappear_timeout: float = 3.0,
        bounce_baud: int = 9600,
        line_baud: int = 115200,
        host: HostOS | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize recovery manager.

        Args:
            grace_seconds: How long terminated holders get to exit before SIGKILL
            reappear_timeout: How long to wait for a re-enumerating device node
            bounce_baud: Temporary baud rate used for the line reset
            line_baud: Baud rate restored after the bounce
            host: Host OS (detected when None)
            sleep: Sleep function (injectable for tests)
        """
        self.grace_seconds = grace_seconds
        self.reappear_timeout = reappear_timeout
        self.bounce_baud = bounce_baud
        self.line_baud = line_baud
        self.host = host or detect_host()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Holder discovery
    # ------------------------------------------------------------------

    def find_holders(self, port: str) -> list[int]:
        """Return PIDs of processes that have the port open.

        Uses `lsof -t`, falling back to `fuser`. The current process is
        never reported.
        """
        if not self.host.is_posix:
            # Handle enumeration needs extra tooling on Windows
            return []

        pids = self._pids_from_lsof(port)
        if pids is None:
            pids = self._pids_from_fuser(port)
        if pids is None:
            logging.warning("Neither lsof nor fuser is available; cannot enumerate port holders")
            return []

        own = os.getpid()
        return sorted(pid for pid in set(pids) if pid != own)

    @staticmethod
    def _pids_from_lsof(port: str) -> list[int] | None:
        try:
            result = subprocess.run(
                ["lsof", "-t", port],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=5,
                check=False,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return None
        # lsof exits 1 when nothing holds the file
        return [int(tok) for tok in result.stdout.split() if tok.isdigit()]

    @staticmethod
    def _pids_from_fuser(port: str) -> list[int] | None:
        try:
            result = subprocess.run(
                ["fuser", port],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=5,
                check=False,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return None
        # fuser prints pids on stdout, sometimes with an access suffix (1234m)
        pids = []
        for tok in result.stdout.split():
            digits = tok.rstrip("cefFrmn")
            if digits.isdigit():
                pids.append(int(digits))
        return pids

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def wait_for_port(self, port: str) -> bool:
        """Wait (bounded) for the device node to be present."""
        deadline = time.monotonic() + self.reappear_timeout
        while True:
            if port_exists(port, self.host):
                return True
            if time.monotonic() >= deadline:
                return False
            self._sleep(0.1)

    def _signal_holders(self, pids: list[int], force: bool) -> list[psutil.Process]:
        procs: list[psutil.Process] = []
        for pid in pids:
            try:
                proc = psutil.Process(pid)
                name = proc.name()
                if force:
                    proc.kill()
                    logging.warning(f"Killed port holder {pid} ({name})")
                else:
                    proc.terminate()
                    logging.info(f"Terminated port holder {pid} ({name})")
                procs.append(proc)
            except psutil.NoSuchProcess:
                pass  # Already gone
            except psutil.AccessDenied as e:
                logging.warning(f"Not permitted to signal port holder {pid}: {e}")
        return procs

    def ensure_free(self, port: str) -> None:
        """
        Make sure no other process holds the port.

        Raises:
            RecoveryFailure: If the device is missing or still held after SIGKILL
        """
        if not self.wait_for_port(port):
            raise RecoveryFailure(f"Port {port} does not exist")

        holders = self.find_holders(port)
        if not holders:
            logging.info(f"Port {port} is free")
            return

        logging.warning(f"Port {port} is held by PIDs {holders}, terminating")
        procs = self._signal_holders(holders, force=False)
        psutil.wait_procs(procs, timeout=self.grace_seconds)

        holders = self.find_holders(port)
        if holders:
            logging.warning(f"Port {port} still held by {holders}, escalating to SIGKILL")
            procs = self._signal_holders(holders, force=True)
            psutil.wait_procs(procs, timeout=self.grace_seconds)
            holders = self.find_holders(port)

        if holders:
            raise RecoveryFailure(f"Port {port} is still held by PIDs {holders} after SIGKILL")

        logging.info(f"Port {port} released")

    def reset_line(self, port: str) -> bool:
        """Set hang-up-on-close and bounce the baud rate.

        Returns:
            True if the line was reset, False otherwise
        """
        ser = serial.Serial()
        ser.port = port
        ser.baudrate = self.line_baud
        ser.timeout = 0
        ser.dsrdtr = False
        ser.rtscts = False
        try:
            ser.open()
            if termios is not None and self.host.is_posix:
                fd = ser.fileno()
                attrs = termios.tcgetattr(fd)
                attrs[2] |= termios.HUPCL
                termios.tcsetattr(fd, termios.TCSANOW, attrs)
            ser.baudrate = self.bounce_baud
            self._sleep(0.05)
            ser.baudrate = self.line_baud
            ser.reset_input_buffer()
            ser.reset_output_buffer()
        except (serial.SerialException, OSError, ValueError) as e:
            logging.warning(f"Line reset on {port} failed: {e}")
            return False
        finally:
            if ser.is_open:
                ser.close()

        logging.info(f"Line reset on {port} (HUPCL, baud bounce {self.bounce_baud}->{self.line_baud})")
        return True

    def force_release(self, port: str) -> bool:
        """Free the port and reset its line state. Best effort, never raises."""
        try:
            self.ensure_free(port)
        except RecoveryFailure as e:
            logging.warning(f"Port release incomplete: {e}")
        return self.reset_line(port)

    def recover(self, port: str) -> bool:
        """Between-attempt recovery. Always logged, never raises."""
        logging.info(f"Port recovery started on {port}")
        ok = self.force_release(port)
        logging.info(f"Port recovery finished on {port}: {'ok' if ok else 'incomplete'}")
        return ok
