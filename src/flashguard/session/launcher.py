"""
Detached session launchers.

A flash job must survive whatever started it (an IDE tool runner, an agent's
shell, a CI step) and must not inherit its stdio. Each launcher starts
`python -m flashguard.session.job --request <ticket>` in a fresh session and
returns as soon as the job runner has written its pid file.

One launcher per host OS; select_launcher() is the only place that chooses.
"""

import logging
import os
import shlex
import shutil
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping

import psutil

from ..config.host import HostOS
from .messages import JobTicket
from .process_tracker import find_job_processes, kill_process_tree, read_pid_file

WINDOW_TITLE = "Firmware Flash"
JOB_MODULE = "flashguard.session.job"


class LaunchError(Exception):
    """The detached session could not be started."""

    pass


class SessionHandle:
    """Handle to a launched flash session."""

    def __init__(self, ticket: JobTicket, process: subprocess.Popen | None = None, launcher_name: str = ""):
        self.ticket = ticket
        self.process = process
        self.launcher_name = launcher_name

    @property
    def job_pid(self) -> int | None:
        return read_pid_file(self.ticket.pid_path)

    def is_alive(self) -> bool:
        """True while the launched process or the job runner is still running."""
        if self.process is not None and self.process.poll() is None:
            return True
        pid = self.job_pid
        if pid is None:
            return False
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def kill(self, timeout: float = 3.0) -> int:
        """Kill every process of this session with its process tree.

        Returns:
            Number of processes signalled
        """
        roots = find_job_processes(str(self.ticket.ticket_path), self.ticket.pid_path)
        if self.process is not None and self.process.poll() is None:
            try:
                if all(proc.pid != self.process.pid for proc in roots):
                    roots.append(psutil.Process(self.process.pid))
            except psutil.NoSuchProcess:
                pass

        killed = kill_process_tree(roots, timeout=timeout)
        logging.info(f"Killed session {self.ticket.job_id} ({killed} processes)")

        if self.process is not None:
            try:
                self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logging.warning(f"Launcher process {self.process.pid} did not exit")
        return killed


class SessionLauncher(ABC):
    """Starts a job runner in an isolated session."""

    name = "session"

    def __init__(
        self,
        python: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.python = python or sys.executable
        self.clock = clock
        self.sleep = sleep

    def job_command(self, ticket: JobTicket, *flags: str) -> list[str]:
        return [self.python, "-m", JOB_MODULE, *flags, "--request", str(ticket.ticket_path)]

    @abstractmethod
    def _spawn(self, ticket: JobTicket) -> subprocess.Popen | None:
        """Start the session; return the launcher-side process if any."""

    def launch(self, ticket: JobTicket) -> SessionHandle:
        """
        Start the session and wait until the job runner reports its pid.

        Raises:
            LaunchError: If the session cannot be started or never reports in
        """
        logging.info(f"Launching session {ticket.job_id} with {self.name}")
        try:
            process = self._spawn(ticket)
        except OSError as e:
            raise LaunchError(f"{self.name}: failed to start session: {e}") from e

        handle = SessionHandle(ticket, process, launcher_name=self.name)
        self._wait_started(handle)
        logging.info(f"Session {ticket.job_id} started (pid {handle.job_pid})")
        return handle

    def _wait_started(self, handle: SessionHandle) -> None:
        start_timeout = handle.ticket.settings.start_timeout
        deadline = self.clock() + start_timeout
        while self.clock() < deadline:
            if handle.job_pid is not None:
                return
            self.sleep(0.1)

        handle.kill()
        raise LaunchError(f"{self.name}: session did not start within {start_timeout:.0f}s")


class BackgroundSessionLauncher(SessionLauncher):
    """Headless launcher: the job runner daemonizes itself (POSIX double fork)."""

    name = "background"

    def __init__(self, host: HostOS = HostOS.LINUX, **kwargs):
        super().__init__(**kwargs)
        self.host = host

    def _spawn(self, ticket: JobTicket) -> subprocess.Popen | None:
        settings = ticket.settings
        if not self.host.is_posix:
            flags = getattr(subprocess, "DETACHED_PROCESS", 0) | getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
            return subprocess.Popen(
                self.job_command(ticket),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                close_fds=True,
                creationflags=flags,
                cwd=str(settings.project_dir),
            )

        intermediate = subprocess.Popen(
            self.job_command(ticket, "--detach"),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            close_fds=True,
            start_new_session=True,
            cwd=str(settings.project_dir),
        )
        try:
            returncode = intermediate.wait(timeout=settings.start_timeout)
        except subprocess.TimeoutExpired:
            intermediate.kill()
            intermediate.wait()
            raise LaunchError(f"{self.name}: detaching process did not exit") from None
        if returncode != 0:
            raise LaunchError(f"{self.name}: detaching process exited with code {returncode}")
        return None


class LinuxTerminalLauncher(SessionLauncher):
    """Runs the job in a new terminal emulator window."""

    name = "linux-terminal"

    TERMINALS: list[tuple[str, list[str]]] = [
        ("xterm", ["-T", WINDOW_TITLE, "-e"]),
        ("gnome-terminal", [f"--title={WINDOW_TITLE}", "--"]),
        ("konsole", ["--title", WINDOW_TITLE, "-e"]),
        ("xfce4-terminal", [f"--title={WINDOW_TITLE}", "-x"]),
    ]

    def __init__(
        self,
        env: Mapping[str, str] | None = None,
        which: Callable[[str], str | None] | None = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.env = os.environ if env is None else env
        self.which = which or shutil.which

    def has_display(self) -> bool:
        return bool(self.env.get("DISPLAY") or self.env.get("WAYLAND_DISPLAY"))

    def find_terminal(self) -> tuple[str, list[str]] | None:
        for name, args in self.TERMINALS:
            path = self.which(name)
            if path:
                return path, args
        return None

    def available(self) -> bool:
        return self.has_display() and self.find_terminal() is not None

    def _spawn(self, ticket: JobTicket) -> subprocess.Popen | None:
        if not self.has_display():
            raise LaunchError(f"{self.name}: no display available")
        terminal = self.find_terminal()
        if terminal is None:
            raise LaunchError(f"{self.name}: no terminal emulator found (install xterm)")

        path, args = terminal
        return subprocess.Popen(
            [path, *args, *self.job_command(ticket, "--console")],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            close_fds=True,
            start_new_session=True,
            cwd=str(ticket.settings.project_dir),
        )


class MacOSTerminalLauncher(SessionLauncher):
    """Runs the job in a new Terminal.app window via osascript."""

    name = "macos-terminal"

    @staticmethod
    def _applescript_string(value: str) -> str:
        return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'

    def build_script(self, ticket: JobTicket) -> str:
        command = f"cd {shlex.quote(str(ticket.settings.project_dir))} && {shlex.join(self.job_command(ticket, '--console'))}"
        return f"tell application \"Terminal\" to do script {self._applescript_string(command)}"

    def _spawn(self, ticket: JobTicket) -> subprocess.Popen | None:
        return subprocess.Popen(
            ["osascript", "-e", self.build_script(ticket)],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            close_fds=True,
            start_new_session=True,
        )


class WindowsConsoleLauncher(SessionLauncher):
    """Runs the job in a new console window."""

    name = "windows-console"

    def _spawn(self, ticket: JobTicket) -> subprocess.Popen | None:
        flags = getattr(subprocess, "CREATE_NEW_CONSOLE", 0) | getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
        return subprocess.Popen(
            self.job_command(ticket, "--console"),
            stdin=subprocess.DEVNULL,
            close_fds=True,
            creationflags=flags,
            cwd=str(ticket.settings.project_dir),
        )


def select_launcher(host: HostOS, preference: str = "auto", env: Mapping[str, str] | None = None) -> SessionLauncher:
    """
    Choose the launcher for this host.

    Args:
        host: Detected host OS
        preference: auto, background or terminal
        env: Environment used for display detection

    Raises:
        LaunchError: If a terminal was requested but none is usable
    """
    if preference == "background":
        return BackgroundSessionLauncher(host=host)

    if host == HostOS.MACOS:
        return MacOSTerminalLauncher()
    if host == HostOS.WINDOWS:
        return WindowsConsoleLauncher()

    if host == HostOS.LINUX:
        terminal = LinuxTerminalLauncher(env=env)
        if terminal.available():
            return terminal
        if preference == "terminal":
            raise LaunchError("No display or terminal emulator available for a terminal session")
        logging.info("No display or terminal emulator, using background session")
        return BackgroundSessionLauncher(host=host)

    if preference == "terminal":
        raise LaunchError(f"Terminal sessions are not supported on {host.value}")
    return BackgroundSessionLauncher(host=host)
