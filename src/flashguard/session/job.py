"""
Flash job runner.

Runs inside the detached session. Strictly sequential:

    PENDING -> BUILDING -> CONVERTING -> FLASHING(1) [-> RECOVERING -> FLASHING(n)]
            -> SUCCEEDED | FAILED

Whatever happens, the job ends by writing one outcome line, cleaning up, and
only then appending DONE to its status channel.

Entry point:
    python -m flashguard.session.job --request ~/.flashguard/request_<job_id>.json [--detach | --console]
"""

import argparse
import json
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..build.builder import ArtifactBuilder, BuildArtifact, BuildError
from ..build.converter import HexConverter
from ..deploy.monitor import SerialCapture
from ..deploy.port_recovery import PortRecoveryManager, RecoveryFailure
from ..deploy.programmer import ProgrammerAdapter, ProgrammerAttempt, resolve_strategy_order
from .messages import JobTicket, Outcome
from .status_channel import StatusChannel

LATEST_LOG_POINTER = "latest_log.txt"
LATEST_SERIAL_POINTER = "latest_serial.txt"

# Closing a terminal window sends SIGHUP
TERMINATION_SIGNALS = [signal.SIGTERM] + ([signal.SIGHUP] if hasattr(signal, "SIGHUP") else [])


class JobState(Enum):
    """Job runner states."""

    PENDING = "pending"
    BUILDING = "building"
    CONVERTING = "converting"
    FLASHING = "flashing"
    RECOVERING = "recovering"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class AllStrategiesExhausted(Exception):
    """Every programmer strategy failed."""

    def __init__(self, attempts: list[ProgrammerAttempt]):
        self.attempts = attempts
        names = ", ".join(f"{a.strategy_name} (exit {a.exit_code})" for a in attempts)
        super().__init__(f"All {len(attempts)} programmer strategies failed: {names}")


class JobTerminated(BaseException):
    """The job runner was asked to stop by a signal."""

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Received {signal.Signals(signum).name}")


def termination_handler(signum: int, frame: object) -> None:
    """Unwind the running job with JobTerminated. Repeated signals are ignored."""
    for sig in TERMINATION_SIGNALS:
        signal.signal(sig, signal.SIG_IGN)
    logging.warning(f"Received {signal.Signals(signum).name}, stopping flash job")
    raise JobTerminated(signum)


def install_signal_handlers() -> dict[int, object]:
    """Route SIGTERM/SIGHUP to termination_handler.

    Returns:
        Previous handlers by signal number
    """
    previous = {}
    for sig in TERMINATION_SIGNALS:
        previous[sig] = signal.signal(sig, termination_handler)
    return previous


@dataclass
class JobResult:
    """Outcome of JobRunner.run().

    Attributes:
        state: SUCCEEDED or FAILED
        attempts: Programmer attempts in the order they ran
        artifact: Built artifact (None if the build failed)
        error: Failure description
    """

    state: JobState
    attempts: list[ProgrammerAttempt] = field(default_factory=list)
    artifact: BuildArtifact | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == JobState.SUCCEEDED


class JobRunner:
    """Executes one flash job described by a ticket."""

    def __init__(
        self,
        ticket: JobTicket,
        builder: ArtifactBuilder | None = None,
        adapter: ProgrammerAdapter | None = None,
        recovery: PortRecoveryManager | None = None,
        channel: StatusChannel | None = None,
        capture: SerialCapture | None = None,
    ):
        settings = ticket.settings
        self.ticket = ticket
        self.settings = settings
        self.port = ticket.request.port
        self.artifact_name = ticket.request.artifact_name
        self.builder = builder or ArtifactBuilder(
            board_dir=settings.board_path,
            target_dir=settings.target_path,
            compiler_cmd=settings.compiler,
            converter=HexConverter(settings.objcopy),
            timeout=settings.build_timeout,
        )
        self.adapter = adapter or ProgrammerAdapter(settings.programmer, timeout=settings.flash_timeout)
        self.recovery = recovery or PortRecoveryManager(grace_seconds=settings.recovery_grace)
        self.channel = channel or StatusChannel(ticket.status_path)
        self.capture = capture or SerialCapture(baud=settings.capture_baud, seconds=settings.capture_seconds)
        self.state = JobState.PENDING

    def _transition(self, state: JobState, detail: str = "") -> None:
        suffix = f" ({detail})" if detail else ""
        logging.info(f"Job {self.ticket.job_id}: {self.state.value} -> {state.value}{suffix}")
        self.state = state

    def run(self) -> JobResult:
        """Run the job to completion. Never raises except on KeyboardInterrupt or JobTerminated."""
        result = JobResult(state=JobState.PENDING)
        logging.info(f"Flash job {self.ticket.job_id}: artifact={self.artifact_name}, port={self.port}")

        try:
            self._execute(result)
        except (KeyboardInterrupt, JobTerminated) as e:
            result.error = str(e) if isinstance(e, JobTerminated) else "Interrupted"
            self._fail(result)
            self._finish(result)
            raise
        except Exception as e:
            logging.error(f"Unexpected error in flash job: {e}", exc_info=True)
            result.error = f"Unexpected error: {e}"
            self._fail(result)

        self._finish(result)
        return result

    def _fail(self, result: JobResult) -> None:
        if self.state != JobState.FAILED:
            self._transition(JobState.FAILED, result.error or "")
        result.state = JobState.FAILED

    def _execute(self, result: JobResult) -> None:
        self._transition(JobState.BUILDING, self.artifact_name)
        try:
            elf_path = self.builder.compile(self.artifact_name)
            self._transition(JobState.CONVERTING, elf_path.name)
            artifact = self.builder.convert(elf_path)
            result.artifact = artifact
        except BuildError as e:
            logging.error(f"Build failed: {e}")
            result.error = f"Build failed: {e}"
            self._fail(result)
            return

        try:
            self.recovery.ensure_free(self.port)
        except RecoveryFailure as e:
            logging.error(f"Port {self.port} is not usable: {e}")
            result.error = f"Port {self.port} could not be freed: {e}"
            self._fail(result)
            return
        self.recovery.force_release(self.port)

        try:
            self._flash_with_fallback(artifact, result)
        except AllStrategiesExhausted as e:
            logging.error(str(e))
            result.error = str(e)
            self._fail(result)
            return

        self._transition(JobState.SUCCEEDED, f"after {len(result.attempts)} attempt(s)")
        result.state = JobState.SUCCEEDED

    def _flash_with_fallback(self, artifact: BuildArtifact, result: JobResult) -> ProgrammerAttempt:
        strategies = resolve_strategy_order(self.settings.strategy_order, self.settings.strategies)

        for index, strategy in enumerate(strategies, start=1):
            if index > 1:
                self._transition(JobState.RECOVERING, self.port)
                self.recovery.recover(self.port)

            self._transition(JobState.FLASHING, f"attempt {index}/{len(strategies)}: {strategy.name}")
            attempt = self.adapter.flash(strategy, artifact, self.port)
            result.attempts.append(attempt)
            if attempt.succeeded:
                logging.info(f"Flash succeeded with strategy {strategy.name}")
                return attempt
            logging.warning(f"Strategy {strategy.name} failed with exit code {attempt.exit_code}")

        raise AllStrategiesExhausted(result.attempts)

    def _maybe_capture(self) -> None:
        mode = self.settings.serial_capture
        if mode == "off":
            return
        source = self.settings.board_path / "src" / "bin" / f"{self.artifact_name}.rs"
        if mode == "auto" and not SerialCapture.source_uses_serial(source):
            logging.info(f"{source.name} does not use Serial, skipping capture")
            return

        output = self.settings.logs_dir / f"serial_{self.artifact_name}_{self.ticket.job_id}.txt"
        try:
            captured = self.capture.capture(self.port, output, self.settings.state_dir / LATEST_SERIAL_POINTER)
            if captured is not None:
                logging.info(f"Serial output saved to {captured}")
        except KeyboardInterrupt:
            raise
        except Exception as e:
            logging.warning(f"Serial capture failed: {e}")

    def _cleanup(self) -> None:
        try:
            self.recovery.force_release(self.port)
        except KeyboardInterrupt:
            raise
        except Exception as e:
            logging.warning(f"Port release after job failed: {e}")

        try:
            self.ticket.ticket_path.unlink(missing_ok=True)
        except OSError as e:
            logging.warning(f"Failed to remove ticket {self.ticket.ticket_path}: {e}")

    def _finish(self, result: JobResult) -> None:
        outcome = Outcome.SUCCESS if result.succeeded else Outcome.FAILED
        try:
            self.channel.write_outcome(outcome, self.artifact_name)
        except OSError as e:
            logging.error(f"Failed to write outcome: {e}")

        if result.succeeded:
            self._maybe_capture()

        self._cleanup()

        try:
            self.channel.write_done()
        except OSError as e:
            logging.error(f"Failed to write completion marker: {e}")
        logging.info(f"Job {self.ticket.job_id} finished: {outcome.value}")


def load_ticket(ticket_path: Path) -> JobTicket:
    """Read a job ticket written by the orchestrator."""
    with open(ticket_path, encoding="utf-8") as f:
        return JobTicket.from_dict(json.load(f))


def setup_logging(log_file: Path, console: bool = False) -> None:
    """Setup logging for a flash job."""
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the detached flash job."""
    parser = argparse.ArgumentParser(prog="python -m flashguard.session.job", description="Run one firmware flash job")
    parser.add_argument("--request", required=True, help="Path to the job ticket (JSON)")
    parser.add_argument("--detach", action="store_true", help="Fork into a new session and return immediately")
    parser.add_argument("--console", action="store_true", help="Also log to stdout (visible terminal)")
    args = parser.parse_args(argv)

    ticket_path = Path(args.request)
    try:
        ticket = load_ticket(ticket_path)
    except (OSError, ValueError, KeyError) as e:
        print(f"Cannot read job ticket {ticket_path}: {e}", file=sys.stderr)
        return 3

    if args.detach and hasattr(os, "fork"):
        if os.fork() > 0:  # type: ignore[attr-defined]
            # Intermediate process exits so the launcher can reap it
            return 0
        os.setsid()  # type: ignore[attr-defined]

    ticket.pid_path.parent.mkdir(parents=True, exist_ok=True)
    ticket.pid_path.write_text(str(os.getpid()))

    setup_logging(ticket.log_path, console=args.console)
    try:
        (ticket.settings.state_dir / LATEST_LOG_POINTER).write_text(str(ticket.log_path))
    except OSError as e:
        logging.warning(f"Failed to update latest log pointer: {e}")

    previous_handlers = install_signal_handlers()
    try:
        result = JobRunner(ticket).run()
    except JobTerminated as e:
        logging.warning(f"Flash job {ticket.job_id} stopped: {e}")
        return 128 + e.signum
    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)

    if args.console:
        status = "SUCCESS" if result.succeeded else f"FAILED: {result.error}"
        print(f"\n{status}\nLog: {ticket.log_path}", flush=True)
    return 0 if result.succeeded else 1


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nFlash job interrupted by user")
        sys.exit(130)
