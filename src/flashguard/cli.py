"""
Command-line interface for flashguard.

This module provides the `flash` CLI tool: build a firmware binary and flash
it to a board from a detached session, safe to call from IDE task runners,
agents and CI steps.
"""

import argparse
import logging
import sys
from dataclasses import dataclass, replace
from logging.handlers import RotatingFileHandler
from pathlib import Path

from flashguard import __version__
from flashguard.cli_utils import BannerFormatter, ErrorFormatter, PathValidator
from flashguard.config import FlashConfigError, default_port, detect_host, load_settings, parse_order
from flashguard.config.settings import CAPTURE_MODES, LAUNCHER_PREFERENCES, FlashSettings
from flashguard.session.job import LATEST_LOG_POINTER
from flashguard.session.lock import JobLock
from flashguard.session.messages import ExitOutcome, FlashRequest
from flashguard.session.orchestrator import FlashOrchestrator

DEFAULT_ARTIFACT = "blink"


class FlashArgumentParser(argparse.ArgumentParser):
    """ArgumentParser whose usage errors exit with the environment error code."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(ExitOutcome.ENVIRONMENT_ERROR.exit_code, f"{self.prog}: error: {message}\n")


@dataclass
class FlashArgs:
    """Arguments for the flash command."""

    port: str | None = None
    artifact: str = DEFAULT_ARTIFACT
    timeout: int | None = None
    order: str | None = None
    launcher: str | None = None
    capture: str | None = None
    project_dir: Path | None = None
    config: Path | None = None
    verbose: bool = False


def setup_logging(settings: FlashSettings, verbose: bool = False) -> None:
    """Setup logging for the invoking process."""
    settings.logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    file_handler = RotatingFileHandler(
        str(settings.logs_dir / "orchestrator.log"),
        maxBytes=1024 * 1024,  # 1MB
        backupCount=3,
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)


def apply_cli_overrides(settings: FlashSettings, args: FlashArgs) -> FlashSettings:
    """Overlay command-line options on loaded settings."""
    overrides = {}
    if args.timeout is not None:
        overrides["timeout"] = args.timeout
    if args.order is not None:
        overrides["strategy_order"] = parse_order(args.order)
    if args.launcher is not None:
        overrides["launcher"] = args.launcher
    if args.capture is not None:
        overrides["serial_capture"] = args.capture
    if not overrides:
        return settings
    updated = replace(settings, **overrides)
    updated.validate()
    return updated


def flash_command(args: FlashArgs) -> None:
    """Build and flash firmware in a detached session.

    Examples:
        flash                              # blink on the default port
        flash /dev/ttyACM0 serial_echo     # specific port and binary
        flash COM4 blink -t 120            # 2 minute deadline
        flash --order stk500v1,arduino     # try the old bootloader first
    """
    try:
        settings = apply_cli_overrides(load_settings(args.project_dir, args.config), args)
    except FlashConfigError as e:
        ErrorFormatter.handle_config_error(e)
        return

    setup_logging(settings, verbose=args.verbose)
    host = detect_host()
    port = args.port or default_port(host)
    request = FlashRequest(port=port, artifact_name=args.artifact, timeout_seconds=settings.timeout)

    BannerFormatter.print_banner(
        f"flashguard {__version__}\nArtifact: {request.artifact_name}\nPort:     {request.port}\nTimeout:  {request.timeout_seconds}s"
    )
    print("Flash session started, waiting for completion...", flush=True)

    try:
        outcome = FlashOrchestrator(settings, host=host).run(request)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
        return
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)
        return

    if outcome.exit_outcome == ExitOutcome.SUCCESS:
        ErrorFormatter.print_success(f"{outcome.message} ({outcome.elapsed:.1f}s)")
        if outcome.log_path is not None:
            print(f"Log: {outcome.log_path}")
    else:
        titles = {
            ExitOutcome.FAILURE: "Flash failed",
            ExitOutcome.TIMEOUT: "Flash timed out",
            ExitOutcome.ENVIRONMENT_ERROR: "Cannot flash",
        }
        ErrorFormatter.print_error(titles[outcome.exit_outcome], outcome.message)
        ErrorFormatter.print_hints(outcome.exit_code, outcome.log_path)

    sys.exit(outcome.exit_code)


def _state_dir(args: FlashArgs) -> Path:
    try:
        return load_settings(args.project_dir, args.config).state_dir
    except FlashConfigError as e:
        ErrorFormatter.handle_config_error(e)
        raise


def last_log_command(args: FlashArgs) -> None:
    """Print the log of the most recent flash job."""
    pointer = _state_dir(args) / LATEST_LOG_POINTER
    if not pointer.exists():
        print("No flash log recorded yet")
        sys.exit(1)

    log_path = Path(pointer.read_text().strip())
    if not log_path.exists():
        print(f"Latest log no longer exists: {log_path}")
        sys.exit(1)

    print(f"==> {log_path} <==")
    print(log_path.read_text(encoding="utf-8", errors="replace"))
    sys.exit(0)


def status_command(args: FlashArgs) -> None:
    """Show whether a flash job is running."""
    state_dir = _state_dir(args)
    lock = JobLock(state_dir)
    holder = lock.read_holder()

    if holder is None:
        print("No flash job running")
    elif lock.is_stale(holder):
        print(f"Stale lock from job {holder.get('job_id', '?')} (pid {holder.get('pid', '?')} is gone)")
    else:
        print(f"Flash job {holder.get('job_id', '?')} running (pid {holder.get('pid')})")

    pointer = state_dir / LATEST_LOG_POINTER
    if pointer.exists():
        print(f"Latest log: {pointer.read_text().strip()}")
    sys.exit(0)


def build_parser() -> argparse.ArgumentParser:
    parser = FlashArgumentParser(
        prog="flash",
        description="flash - build and flash firmware from a detached session",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"flashguard {__version__}",
    )
    parser.add_argument(
        "port",
        nargs="?",
        default=None,
        help="Serial port (default: FLASHGUARD_PORT or the first detected board)",
    )
    parser.add_argument(
        "artifact",
        nargs="?",
        default=DEFAULT_ARTIFACT,
        help=f"Firmware binary to build and flash (default: {DEFAULT_ARTIFACT})",
    )
    parser.add_argument(
        "-t",
        "--timeout",
        type=int,
        default=None,
        help="Seconds to wait for the flash job (default: 300)",
    )
    parser.add_argument(
        "--order",
        default=None,
        help="Comma separated programmer strategies to try (default: arduino,stk500v1)",
    )
    parser.add_argument(
        "--launcher",
        choices=LAUNCHER_PREFERENCES,
        default=None,
        help="How to start the detached session",
    )
    parser.add_argument(
        "--capture",
        choices=CAPTURE_MODES,
        default=None,
        help="Capture serial output after a successful flash",
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=None,
        help="Project root containing boards/ and flashguard.ini (default: current directory)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Explicit flashguard.ini to use",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show orchestrator log output",
    )
    parser.add_argument(
        "--last-log",
        action="store_true",
        help="Print the log of the most recent flash job and exit",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Show whether a flash job is running and exit",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """flash - build and flash firmware from a detached session."""
    parser = build_parser()
    parsed_args = parser.parse_args(argv)

    if parsed_args.timeout is not None and parsed_args.timeout <= 0:
        parser.error("--timeout must be positive")

    if parsed_args.project_dir is not None:
        PathValidator.validate_project_dir(parsed_args.project_dir)

    flash_args = FlashArgs(
        port=parsed_args.port,
        artifact=parsed_args.artifact,
        timeout=parsed_args.timeout,
        order=parsed_args.order,
        launcher=parsed_args.launcher,
        capture=parsed_args.capture,
        project_dir=parsed_args.project_dir,
        config=parsed_args.config,
        verbose=parsed_args.verbose,
    )

    if parsed_args.last_log:
        last_log_command(flash_args)
    elif parsed_args.status:
        status_command(flash_args)
    else:
        flash_command(flash_args)


if __name__ == "__main__":
    main()
