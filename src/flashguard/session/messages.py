"""
Typed messages exchanged across the detached-process boundary.

The orchestrator and the job runner never share memory. The orchestrator
writes a JobTicket (JSON) before launch; the job runner answers only through
the status channel file. Everything in here is a plain dataclass with
to_dict/from_dict for that reason.
"""

import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..config.settings import FlashSettings


class Outcome(Enum):
    """Outcome written to the status channel."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_string(cls, value: str) -> "Outcome":
        """Convert string to Outcome, defaulting to UNKNOWN if invalid."""
        try:
            return cls(value.strip().upper())
        except ValueError:
            return cls.UNKNOWN


class ExitOutcome(Enum):
    """Final result of an orchestrated flash, valued as the process exit code."""

    SUCCESS = 0
    FAILURE = 1
    TIMEOUT = 2
    ENVIRONMENT_ERROR = 3

    @property
    def exit_code(self) -> int:
        return self.value


@dataclass(frozen=True)
class FlashRequest:
    """Caller -> orchestrator: what to flash, where, and how long to wait.

    Attributes:
        port: Serial device path (or COM name)
        artifact_name: Firmware binary to build and flash
        timeout_seconds: Orchestrator deadline
    """

    port: str
    artifact_name: str
    timeout_seconds: int

    def to_dict(self) -> dict[str, Any]:
        return {"port": self.port, "artifact_name": self.artifact_name, "timeout_seconds": self.timeout_seconds}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FlashRequest":
        return cls(
            port=data["port"],
            artifact_name=data["artifact_name"],
            timeout_seconds=int(data["timeout_seconds"]),
        )


def ticket_path_for(state_dir: Path, job_id: str) -> Path:
    return state_dir / f"request_{job_id}.json"


def pid_path_for(state_dir: Path, job_id: str) -> Path:
    return state_dir / f"job_{job_id}.pid"


def new_job_id() -> str:
    """Generate a job id unique per invocation."""
    return f"job_{int(time.time() * 1000)}_{os.getpid()}"


@dataclass
class JobTicket:
    """Orchestrator -> job runner: everything the detached job needs.

    Attributes:
        job_id: Unique job identifier embedded in every file name
        request: The flash request
        settings: Resolved settings (never re-read in the job)
        status_path: Status channel file
        log_path: Captured-output log file for this job
        pid_path: File the job runner writes its pid to on start
        ticket_path: Where this ticket is stored
        created_at: Unix timestamp when the ticket was created
    """

    job_id: str
    request: FlashRequest
    settings: FlashSettings
    status_path: Path
    log_path: Path
    pid_path: Path
    ticket_path: Path
    created_at: float = field(default_factory=time.time)

    @classmethod
    def create(cls, request: FlashRequest, settings: FlashSettings, job_id: str | None = None) -> "JobTicket":
        """Lay out the job-scoped file names under the state directory."""
        job_id = job_id or new_job_id()
        state_dir = settings.state_dir
        return cls(
            job_id=job_id,
            request=request,
            settings=settings,
            status_path=state_dir / f"status_{job_id}.txt",
            log_path=settings.logs_dir / f"flash_{job_id}.log",
            pid_path=pid_path_for(state_dir, job_id),
            ticket_path=ticket_path_for(state_dir, job_id),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "job_id": self.job_id,
            "request": self.request.to_dict(),
            "settings": self.settings.to_dict(),
            "status_path": str(self.status_path),
            "log_path": str(self.log_path),
            "pid_path": str(self.pid_path),
            "ticket_path": str(self.ticket_path),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobTicket":
        """Create JobTicket from dictionary."""
        return cls(
            job_id=data["job_id"],
            request=FlashRequest.from_dict(data["request"]),
            settings=FlashSettings.from_dict(data["settings"]),
            status_path=Path(data["status_path"]),
            log_path=Path(data["log_path"]),
            pid_path=Path(data["pid_path"]),
            ticket_path=Path(data["ticket_path"]),
            created_at=data.get("created_at", time.time()),
        )


@dataclass
class FlashOutcome:
    """Result of FlashOrchestrator.run().

    Attributes:
        exit_outcome: Final classification (maps to the exit code)
        message: One-line summary for the user
        job_id: Job id if a job was created
        log_path: Job log (kept for post-mortem diagnosis)
        elapsed: Seconds spent in run()
    """

    exit_outcome: ExitOutcome
    message: str
    job_id: str | None = None
    log_path: Path | None = None
    elapsed: float = 0.0

    @property
    def exit_code(self) -> int:
        return self.exit_outcome.exit_code
