"""
flashguard detached flash sessions.

The orchestrator runs in the caller's process; the job runner runs in an
isolated session and reports back through a status file.
"""

from .messages import ExitOutcome, FlashOutcome, FlashRequest, JobTicket, Outcome
from .status_channel import StatusChannel, StatusRecord
from .lock import JobInProgressError, JobLock
from .launcher import (
    BackgroundSessionLauncher,
    LaunchError,
    LinuxTerminalLauncher,
    MacOSTerminalLauncher,
    SessionHandle,
    SessionLauncher,
    WindowsConsoleLauncher,
    select_launcher,
)
from .job import AllStrategiesExhausted, JobResult, JobRunner, JobState
from .orchestrator import FlashOrchestrator, PortUnavailable, ToolMissingError

__all__ = [
    "AllStrategiesExhausted",
    "BackgroundSessionLauncher",
    "ExitOutcome",
    "FlashOrchestrator",
    "FlashOutcome",
    "FlashRequest",
    "JobInProgressError",
    "JobLock",
    "JobResult",
    "JobRunner",
    "JobState",
    "JobTicket",
    "LaunchError",
    "LinuxTerminalLauncher",
    "MacOSTerminalLauncher",
    "Outcome",
    "PortUnavailable",
    "SessionHandle",
    "SessionLauncher",
    "StatusChannel",
    "StatusRecord",
    "ToolMissingError",
    "WindowsConsoleLauncher",
    "select_launcher",
]
