"""
One-job-at-a-time lock.

The status channel has a single reader and a single writer per job, and the
serial port can only be driven by one programmer. A lock file created with
O_CREAT | O_EXCL enforces that only one orchestrator runs at a time. A lock
whose owner pid is gone is stale and gets replaced, but only once the job
session it started is no longer running.
"""

import json
import logging
import os
import time
from pathlib import Path
from typing import Any

import psutil

from .messages import ticket_path_for
from .process_tracker import find_job_processes, is_live, kill_process_tree

LOCK_FILENAME = "flash.lock"


class JobInProgressError(Exception):
    """Another flash job holds the lock."""

    def __init__(self, holder: dict[str, Any]):
        self.holder = holder
        super().__init__(f"Another flash job is running (job {holder.get('job_id', '?')}, pid {holder.get('pid', '?')})")


class JobLock:
    """Exclusive lock file under the state directory."""

    def __init__(self, state_dir: Path):
        self.path = state_dir / LOCK_FILENAME
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def read_holder(self) -> dict[str, Any] | None:
        """Return the lock contents, or None if there is no (readable) lock."""
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, ValueError, OSError):
            return {}

    def is_stale(self, holder: dict[str, Any]) -> bool:
        pid = holder.get("pid")
        if not isinstance(pid, int):
            return True
        return not psutil.pid_exists(pid)

    def stop_orphaned_session(self, holder: dict[str, Any]) -> None:
        """
        Kill the session of a stale lock's job if it outlived its orchestrator.

        Raises:
            JobInProgressError: If the session is still running after the kill
        """
        job_id = holder.get("job_id")
        if not isinstance(job_id, str) or not job_id:
            return

        # Matched by command line only; the old pid file may name a reused pid
        marker = str(ticket_path_for(self.path.parent, job_id))

        sessions = [proc for proc in find_job_processes(marker) if is_live(proc)]
        if not sessions:
            return

        logging.warning(f"Job {job_id} outlived its orchestrator, killing its session")
        kill_process_tree(sessions)
        if any(is_live(proc) for proc in find_job_processes(marker)):
            raise JobInProgressError(holder)

    def acquire(self, job_id: str) -> None:
        """
        Take the lock for job_id.

        Raises:
            JobInProgressError: If a live process holds the lock
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps({"pid": os.getpid(), "job_id": job_id, "created_at": time.time()})

        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self.read_holder()
                if holder is None:
                    continue
                if not self.is_stale(holder):
                    raise JobInProgressError(holder)
                self.stop_orphaned_session(holder)
                logging.info(f"Removing stale lock held by pid {holder.get('pid')}")
                self.path.unlink(missing_ok=True)
                continue

            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            self._held = True
            logging.debug(f"Acquired job lock {self.path} for {job_id}")
            return

        holder = self.read_holder() or {}
        raise JobInProgressError(holder)

    def release(self) -> None:
        """Release the lock if this instance holds it."""
        if not self._held:
            return
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logging.warning(f"Failed to remove lock file {self.path}: {e}")
        self._held = False

    def __enter__(self) -> "JobLock":
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()
