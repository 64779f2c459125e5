"""
Process tree discovery and cleanup for detached flash sessions.

A detached session is found again by what it carries on its command line
(the job's ticket path) and by the pid file the job runner writes on start.
Whole trees are killed bottom-up: terminate, wait, then kill stragglers.
"""

import logging
import os
from pathlib import Path

import psutil


def read_pid_file(pid_file: Path) -> int | None:
    """Read a pid file, returning None if absent or corrupted."""
    try:
        return int(pid_file.read_text(encoding="utf-8").strip())
    except FileNotFoundError:
        return None
    except (ValueError, OSError) as e:
        logging.warning(f"Unreadable pid file {pid_file}: {e}")
        return None


def find_job_processes(marker: str, pid_file: Path | None = None) -> list[psutil.Process]:
    """Find every process belonging to one job.

    Args:
        marker: String carried on the job's command line (the ticket path)
        pid_file: Pid file written by the job runner

    Returns:
        Matching processes, excluding the calling process
    """
    own_pid = os.getpid()
    found: dict[int, psutil.Process] = {}

    for proc in psutil.process_iter(["pid", "cmdline"]):
        try:
            cmdline = proc.info.get("cmdline") or []
            if proc.pid != own_pid and any(marker in part for part in cmdline):
                found[proc.pid] = proc
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    if pid_file is not None:
        pid = read_pid_file(pid_file)
        if pid is not None and pid != own_pid and pid not in found:
            try:
                found[pid] = psutil.Process(pid)
            except psutil.NoSuchProcess:
                pass

    return list(found.values())


def is_live(proc: psutil.Process) -> bool:
    """True unless the process is gone or a zombie."""
    try:
        return proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def terminate_processes(processes: list[psutil.Process], timeout: float = 3.0) -> int:
    """Terminate processes, wait, then force kill anything left.

    Returns:
        Number of processes that were signalled
    """
    signalled: list[psutil.Process] = []
    for proc in processes:
        try:
            proc.terminate()
            signalled.append(proc)
            logging.debug(f"Terminated process {proc.pid}")
        except psutil.NoSuchProcess:
            pass
        except KeyboardInterrupt:
            raise
        except Exception as e:
            logging.warning(f"Failed to terminate process {proc.pid}: {e}")

    _gone, alive = psutil.wait_procs(signalled, timeout=timeout)

    for proc in alive:
        try:
            proc.kill()
            logging.warning(f"Force killed stubborn process {proc.pid}")
        except psutil.NoSuchProcess:
            pass
        except KeyboardInterrupt:
            raise
        except Exception as e:
            logging.warning(f"Failed to force kill process {proc.pid}: {e}")

    return len(signalled)


def kill_process_tree(roots: list[psutil.Process], timeout: float = 3.0) -> int:
    """Kill each root and all of its descendants, children first.

    Returns:
        Number of processes that were signalled
    """
    ordered: list[psutil.Process] = []
    seen: set[int] = set()

    for root in roots:
        try:
            children = root.children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            children = []
        for proc in reversed(children):
            if proc.pid not in seen:
                seen.add(proc.pid)
                ordered.append(proc)

    for root in roots:
        if root.pid not in seen:
            seen.add(root.pid)
            ordered.append(root)

    if not ordered:
        return 0

    killed = terminate_processes(ordered, timeout=timeout)
    logging.info(f"Killed {killed} processes")
    return killed
