"""
File-based completion protocol between the detached job and the orchestrator.

The job appends exactly two kinds of lines:

    SUCCESS|blink|1760000000      (or FAILED|...)   -- the outcome line
    DONE                                            -- the terminal marker

DONE is appended only after the job's own cleanup finished. A record is
terminal only once DONE is present; an outcome line alone means the job is
still running (or died mid-cleanup).
"""

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path

from .messages import Outcome

DONE_MARKER = "DONE"
FIELD_SEPARATOR = "|"


@dataclass(frozen=True)
class StatusRecord:
    """A terminal status read from the channel."""

    outcome: Outcome
    artifact_name: str
    timestamp: int

    @property
    def succeeded(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    def outcome_line(self) -> str:
        return FIELD_SEPARATOR.join([self.outcome.value, self.artifact_name, str(self.timestamp)])

    @classmethod
    def parse_outcome_line(cls, line: str) -> "StatusRecord | None":
        """Parse `OUTCOME|artifact|timestamp`; None if the line is not an outcome line."""
        parts = line.strip().split(FIELD_SEPARATOR)
        if len(parts) != 3:
            return None
        outcome = Outcome.from_string(parts[0])
        if outcome == Outcome.UNKNOWN:
            return None
        try:
            timestamp = int(parts[2])
        except ValueError:
            return None
        return cls(outcome=outcome, artifact_name=parts[1], timestamp=timestamp)


class StatusChannel:
    """Append-only status file for one job."""

    def __init__(self, path: Path):
        self.path = path

    def clear(self) -> None:
        """Delete the status file (no error if it is absent)."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logging.warning(f"Failed to remove status file {self.path}: {e}")

    def exists(self) -> bool:
        return self.path.exists()

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    def write_outcome(self, outcome: Outcome, artifact_name: str, timestamp: int | None = None) -> StatusRecord:
        """Append the outcome line."""
        record = StatusRecord(outcome=outcome, artifact_name=artifact_name, timestamp=timestamp if timestamp is not None else int(time.time()))
        self._append(record.outcome_line())
        return record

    def write_done(self) -> None:
        """Append the terminal marker."""
        self._append(DONE_MARKER)

    def read_lines(self) -> list[str]:
        try:
            return self.path.read_text(encoding="utf-8", errors="replace").splitlines()
        except FileNotFoundError:
            return []

    def poll(self) -> StatusRecord | None:
        """
        Non-blocking read of the channel.

        Returns:
            The StatusRecord once the terminal marker is present, otherwise None.
            DONE without a parsable outcome line yields an UNKNOWN record.
        """
        try:
            lines = self.read_lines()
        except OSError as e:
            logging.debug(f"Status file not readable yet: {e}")
            return None

        stripped = [line.strip() for line in lines]
        if DONE_MARKER not in stripped:
            return None

        record = None
        for line in stripped[: stripped.index(DONE_MARKER)]:
            parsed = StatusRecord.parse_outcome_line(line)
            if parsed is not None:
                record = parsed

        if record is None:
            return StatusRecord(outcome=Outcome.UNKNOWN, artifact_name="", timestamp=int(time.time()))
        return record


def sweep_stale_status_files(state_dir: Path, keep: Path | None = None) -> list[Path]:
    """Remove status files left behind by earlier jobs.

    Only call this while holding the job lock.
    """
    removed = []
    for path in state_dir.glob("status_*.txt"):
        if keep is not None and path == keep:
            continue
        try:
            path.unlink()
            removed.append(path)
        except OSError as e:
            logging.warning(f"Failed to remove stale status file {path}: {e}")
    return removed
