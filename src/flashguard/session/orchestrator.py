"""
Flash orchestrator.

Runs in the invoking process. Starts one detached flash session per request
and waits for its status channel to report completion, with a hard deadline
that does not depend on how long the session itself lives.

Usage:
    settings = load_settings()
    outcome = FlashOrchestrator(settings).run(FlashRequest("/dev/ttyUSB0", "blink", 300))
    sys.exit(outcome.exit_code)
"""

import json
import logging
import time
from collections.abc import Callable

from ..cli_utils import MissingTool, ToolChecker
from ..config.host import HostOS, detect_host, port_exists
from ..config.settings import FlashSettings
from .launcher import LaunchError, SessionHandle, SessionLauncher, select_launcher
from .lock import JobInProgressError, JobLock
from .messages import ExitOutcome, FlashOutcome, FlashRequest, JobTicket
from .status_channel import StatusChannel, StatusRecord, sweep_stale_status_files

# Seconds between "still waiting" log lines
PROGRESS_LOG_INTERVAL = 10.0


class PortUnavailable(Exception):
    """The requested serial port does not exist."""

    pass


class ToolMissingError(Exception):
    """A required external tool is not installed."""

    def __init__(self, missing: list[MissingTool]):
        self.missing = missing
        names = ", ".join(f"{tool.command} ({tool.role})" for tool in missing)
        super().__init__(f"Required tools not found: {names}")


def write_ticket(ticket: JobTicket) -> None:
    """Atomically write the job ticket.

    Args:
        ticket: Ticket to persist at ticket.ticket_path
    """
    ticket.ticket_path.parent.mkdir(parents=True, exist_ok=True)

    temp_file = ticket.ticket_path.with_suffix(".tmp")
    with open(temp_file, "w", encoding="utf-8") as f:
        json.dump(ticket.to_dict(), f, indent=2)

    temp_file.replace(ticket.ticket_path)


class FlashOrchestrator:
    """Launches a detached flash job and waits for its outcome."""

    def __init__(
        self,
        settings: FlashSettings,
        launcher: SessionLauncher | None = None,
        host: HostOS | None = None,
        tool_checker: ToolChecker | None = None,
        port_checker: Callable[[str], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize orchestrator.

        Args:
            settings: Resolved settings (serialized into every ticket)
            launcher: Session launcher (chosen for the host when None)
            host: Host OS (detected when None)
            tool_checker: External tool check
            port_checker: Port existence check (host default when None)
            clock: Monotonic clock
            sleep: Sleep function
        """
        self.settings = settings
        self.host = host or detect_host()
        self.launcher = launcher
        self.tool_checker = tool_checker or ToolChecker()
        self.port_checker = port_checker or (lambda port: port_exists(port, self.host))
        self.clock = clock
        self.sleep = sleep

    def _outcome(self, exit_outcome: ExitOutcome, message: str, started: float, ticket: JobTicket | None = None) -> FlashOutcome:
        return FlashOutcome(
            exit_outcome=exit_outcome,
            message=message,
            job_id=ticket.job_id if ticket else None,
            log_path=ticket.log_path if ticket else None,
            elapsed=self.clock() - started,
        )

    def preflight(self, request: FlashRequest) -> None:
        """
        Check the environment before anything is spawned.

        Raises:
            PortUnavailable: If the port does not exist
            ToolMissingError: If a required tool is not installed
        """
        if not self.port_checker(request.port):
            raise PortUnavailable(f"Serial port {request.port} not found")

        missing = self.tool_checker.missing(self.settings)
        if missing:
            raise ToolMissingError(missing)

    def run(self, request: FlashRequest) -> FlashOutcome:
        """
        Flash request.artifact_name to request.port in a detached session.

        Returns:
            FlashOutcome (SUCCESS, FAILURE, TIMEOUT or ENVIRONMENT_ERROR)

        Raises:
            KeyboardInterrupt: After the session was killed and cleaned up
        """
        started = self.clock()
        logging.info(f"Flash request: artifact={request.artifact_name}, port={request.port}, timeout={request.timeout_seconds}s")

        try:
            self.preflight(request)
        except PortUnavailable as e:
            logging.error(str(e))
            return self._outcome(ExitOutcome.ENVIRONMENT_ERROR, str(e), started)
        except ToolMissingError as e:
            logging.error(str(e))
            details = "\n".join(f"{tool.role}: '{tool.command}' not found. {tool.hint}" for tool in e.missing)
            return self._outcome(ExitOutcome.ENVIRONMENT_ERROR, details, started)

        ticket = JobTicket.create(request, self.settings)
        lock = JobLock(self.settings.state_dir)
        try:
            lock.acquire(ticket.job_id)
        except JobInProgressError as e:
            logging.error(str(e))
            return self._outcome(ExitOutcome.ENVIRONMENT_ERROR, str(e), started)

        try:
            return self._run_locked(ticket, started)
        finally:
            lock.release()

    def _run_locked(self, ticket: JobTicket, started: float) -> FlashOutcome:
        channel = StatusChannel(ticket.status_path)
        channel.clear()
        removed = sweep_stale_status_files(self.settings.state_dir)
        if removed:
            logging.info(f"Removed {len(removed)} stale status file(s)")

        self.settings.logs_dir.mkdir(parents=True, exist_ok=True)
        write_ticket(ticket)
        logging.info(f"Job {ticket.job_id}: ticket written to {ticket.ticket_path}")

        try:
            launcher = self.launcher or select_launcher(self.host, self.settings.launcher)
            handle = launcher.launch(ticket)
        except LaunchError as e:
            logging.error(f"Launch failed: {e}")
            self._remove_job_files(ticket)
            return self._outcome(ExitOutcome.FAILURE, f"Could not start flash session: {e}", started, ticket)

        try:
            record = self._wait_for_completion(channel, ticket, started)
        except KeyboardInterrupt:
            logging.warning(f"Interrupted, killing session {ticket.job_id}")
            handle.kill()
            self._remove_job_files(ticket)
            raise

        if record is None:
            logging.error(f"Job {ticket.job_id} did not finish within {ticket.request.timeout_seconds}s, killing session")
            handle.kill()
            self._remove_job_files(ticket)
            return self._outcome(ExitOutcome.TIMEOUT, f"Flash timed out after {ticket.request.timeout_seconds}s", started, ticket)

        self._release_session(handle)
        self._remove_job_files(ticket)

        if record.succeeded:
            logging.info(f"Job {ticket.job_id} succeeded")
            return self._outcome(ExitOutcome.SUCCESS, f"Flashed {ticket.request.artifact_name} to {ticket.request.port}", started, ticket)

        logging.error(f"Job {ticket.job_id} finished with outcome {record.outcome.value}")
        return self._outcome(ExitOutcome.FAILURE, f"Flashing {ticket.request.artifact_name} to {ticket.request.port} failed", started, ticket)

    def _wait_for_completion(self, channel: StatusChannel, ticket: JobTicket, started: float) -> StatusRecord | None:
        """Poll the status channel until the terminal marker or the deadline."""
        deadline = started + ticket.request.timeout_seconds
        next_progress = self.clock() + PROGRESS_LOG_INTERVAL

        while True:
            record = channel.poll()
            if record is not None:
                return record

            now = self.clock()
            if now >= deadline:
                return None
            if now >= next_progress:
                logging.info(f"Waiting for job {ticket.job_id} ({now - started:.0f}s elapsed)")
                next_progress = now + PROGRESS_LOG_INTERVAL

            self.sleep(min(self.settings.poll_interval, deadline - now))

    def _release_session(self, handle: SessionHandle) -> None:
        """Give a finished session linger_seconds to exit, then kill it."""
        deadline = self.clock() + self.settings.linger_seconds
        while handle.is_alive() and self.clock() < deadline:
            self.sleep(0.2)
        if handle.is_alive():
            logging.info(f"Session {handle.ticket.job_id} still running after completion, killing it")
            handle.kill()

    def _remove_job_files(self, ticket: JobTicket) -> None:
        """Delete status, ticket and pid files. The job log is kept."""
        for path in (ticket.status_path, ticket.ticket_path, ticket.ticket_path.with_suffix(".tmp"), ticket.pid_path):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logging.warning(f"Failed to remove {path}: {e}")
