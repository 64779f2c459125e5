"""
Unit tests for FlashOrchestrator.

The launcher is a mock whose launch() plays the part of the detached job by
writing (or not writing) the status channel. Time is driven by a fake clock so
timeouts run instantly.
"""

import json
import os
import subprocess
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from flashguard.cli_utils import MissingTool
from flashguard.config.settings import FlashSettings
from flashguard.session.launcher import LaunchError
from flashguard.session.messages import ExitOutcome, FlashRequest, JobTicket, Outcome
from flashguard.session.orchestrator import FlashOrchestrator, write_ticket
from flashguard.session.status_channel import StatusChannel


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += max(seconds, 0.01)


@pytest.fixture
def settings(tmp_path: Path) -> FlashSettings:
    return FlashSettings(project_dir=tmp_path, state_dir=tmp_path / "state", linger_seconds=1.0)


def _job(outcome: Outcome | None = None, done: bool = True, alive: bool = False):
    """Build a launch() side effect that records the ticket and writes the channel."""
    seen = {}

    def launch(ticket: JobTicket):
        seen["ticket"] = ticket
        seen["ticket_on_disk"] = json.loads(ticket.ticket_path.read_text())
        channel = StatusChannel(ticket.status_path)
        if outcome is not None:
            channel.write_outcome(outcome, ticket.request.artifact_name)
        if done:
            channel.write_done()
        handle = MagicMock()
        handle.ticket = ticket
        handle.is_alive.return_value = alive
        seen["handle"] = handle
        return handle

    return launch, seen


def _orchestrator(settings, launcher, clock=None, port_ok=True, missing=None):
    clock = clock or FakeClock()
    tool_checker = MagicMock()
    tool_checker.missing.return_value = missing or []
    return FlashOrchestrator(
        settings,
        launcher=launcher,
        tool_checker=tool_checker,
        port_checker=lambda port: port_ok,
        clock=clock,
        sleep=clock.sleep,
    )


class TestFlashOrchestratorRun:
    def test_success(self, settings):
        launch, seen = _job(Outcome.SUCCESS)
        launcher = MagicMock()
        launcher.launch.side_effect = launch

        outcome = _orchestrator(settings, launcher).run(FlashRequest("/dev/fake0", "blink", 5))

        assert outcome.exit_outcome == ExitOutcome.SUCCESS
        assert outcome.exit_code == 0
        ticket = seen["ticket"]
        assert outcome.job_id == ticket.job_id
        assert outcome.log_path == ticket.log_path
        assert seen["ticket_on_disk"]["request"]["artifact_name"] == "blink"
        assert not ticket.status_path.exists()
        assert not ticket.ticket_path.exists()
        assert not (settings.state_dir / "flash.lock").exists()
        seen["handle"].kill.assert_not_called()

    def test_failed_outcome(self, settings):
        launch, _ = _job(Outcome.FAILED)
        launcher = MagicMock()
        launcher.launch.side_effect = launch

        outcome = _orchestrator(settings, launcher).run(FlashRequest("/dev/fake0", "blink", 5))

        assert outcome.exit_outcome == ExitOutcome.FAILURE
        assert outcome.exit_code == 1

    def test_done_without_outcome_is_failure(self, settings):
        launch, _ = _job(outcome=None, done=True)
        launcher = MagicMock()
        launcher.launch.side_effect = launch

        outcome = _orchestrator(settings, launcher).run(FlashRequest("/dev/fake0", "blink", 5))

        assert outcome.exit_code == 1

    def test_timeout_kills_session(self, settings):
        """Test a job that never writes DONE is killed at the deadline and exits 2."""
        launch, seen = _job(outcome=None, done=False, alive=True)
        launcher = MagicMock()
        launcher.launch.side_effect = launch
        clock = FakeClock()

        outcome = _orchestrator(settings, launcher, clock=clock).run(FlashRequest("/dev/fake0", "blink", 5))

        assert outcome.exit_outcome == ExitOutcome.TIMEOUT
        assert outcome.exit_code == 2
        assert "timed out after 5s" in outcome.message
        assert 5.0 <= outcome.elapsed < 6.0
        seen["handle"].kill.assert_called_once()
        assert not seen["ticket"].status_path.exists()
        assert not seen["ticket"].ticket_path.exists()
        assert not (settings.state_dir / "flash.lock").exists()

    def test_partial_status_is_not_completion(self, settings):
        """Test an outcome line without DONE still times out."""
        launch, seen = _job(Outcome.SUCCESS, done=False, alive=True)
        launcher = MagicMock()
        launcher.launch.side_effect = launch

        outcome = _orchestrator(settings, launcher).run(FlashRequest("/dev/fake0", "blink", 3))

        assert outcome.exit_code == 2
        seen["handle"].kill.assert_called_once()

    def test_stale_status_from_previous_job_ignored(self, settings):
        """Test a finished status file from an earlier job is swept and never read."""
        settings.state_dir.mkdir(parents=True)
        stale = settings.state_dir / "status_job_old.txt"
        stale.write_text("SUCCESS|blink|1\nDONE\n")

        launch, seen = _job(outcome=None, done=False, alive=True)
        launcher = MagicMock()
        launcher.launch.side_effect = launch

        outcome = _orchestrator(settings, launcher).run(FlashRequest("/dev/fake0", "blink", 2))

        assert outcome.exit_code == 2
        assert not stale.exists()

    def test_lingering_session_killed(self, settings):
        launch, seen = _job(Outcome.SUCCESS, alive=True)
        launcher = MagicMock()
        launcher.launch.side_effect = launch

        outcome = _orchestrator(settings, launcher).run(FlashRequest("/dev/fake0", "blink", 5))

        assert outcome.exit_code == 0
        seen["handle"].kill.assert_called_once()

    def test_launch_error(self, settings):
        launcher = MagicMock()
        launcher.launch.side_effect = LaunchError("background: detaching process exited with code 1")

        outcome = _orchestrator(settings, launcher).run(FlashRequest("/dev/fake0", "blink", 5))

        assert outcome.exit_outcome == ExitOutcome.FAILURE
        assert "Could not start flash session" in outcome.message
        assert list(settings.state_dir.glob("request_*.json")) == []
        assert not (settings.state_dir / "flash.lock").exists()

    def test_keyboard_interrupt_kills_and_reraises(self, settings):
        launch, seen = _job(outcome=None, done=False, alive=True)
        launcher = MagicMock()
        launcher.launch.side_effect = launch
        clock = FakeClock()
        orchestrator = _orchestrator(settings, launcher, clock=clock)

        def interrupt(seconds):
            raise KeyboardInterrupt

        orchestrator.sleep = interrupt

        with pytest.raises(KeyboardInterrupt):
            orchestrator.run(FlashRequest("/dev/fake0", "blink", 5))

        seen["handle"].kill.assert_called_once()
        assert not seen["ticket"].ticket_path.exists()
        assert not (settings.state_dir / "flash.lock").exists()


class TestOrphanedSession:
    def test_session_of_killed_invoker_is_stopped(self, settings):
        """Test a job left running by a killed invoker is stopped before a new launch."""
        settings.state_dir.mkdir(parents=True)
        dead_invoker = subprocess.Popen([sys.executable, "-c", "pass"])
        dead_invoker.wait()
        old_ticket = settings.state_dir / "request_job_old.json"
        old_job = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)", "--request", str(old_ticket)])
        (settings.state_dir / "flash.lock").write_text(json.dumps({"pid": dead_invoker.pid, "job_id": "job_old"}))

        try:
            launch, seen = _job(Outcome.SUCCESS)
            launcher = MagicMock()
            launcher.launch.side_effect = launch

            outcome = _orchestrator(settings, launcher).run(FlashRequest("/dev/fake0", "blink", 5))

            assert outcome.exit_code == 0
            assert old_job.poll() is not None
        finally:
            if old_job.poll() is None:
                old_job.kill()
                old_job.wait()


class TestPreflight:
    def test_missing_port(self, settings):
        launcher = MagicMock()

        outcome = _orchestrator(settings, launcher, port_ok=False).run(FlashRequest("/dev/missing", "blink", 5))

        assert outcome.exit_outcome == ExitOutcome.ENVIRONMENT_ERROR
        assert outcome.exit_code == 3
        assert "/dev/missing" in outcome.message
        launcher.launch.assert_not_called()

    def test_missing_tools(self, settings):
        launcher = MagicMock()
        missing = [MissingTool(role="programmer", command="avrdude", hint="Install avrdude")]

        outcome = _orchestrator(settings, launcher, missing=missing).run(FlashRequest("/dev/fake0", "blink", 5))

        assert outcome.exit_code == 3
        assert "programmer: 'avrdude' not found. Install avrdude" in outcome.message
        launcher.launch.assert_not_called()

    def test_job_in_progress(self, settings):
        settings.state_dir.mkdir(parents=True)
        (settings.state_dir / "flash.lock").write_text(json.dumps({"pid": os.getpid(), "job_id": "job_other"}))
        launcher = MagicMock()

        outcome = _orchestrator(settings, launcher).run(FlashRequest("/dev/fake0", "blink", 5))

        assert outcome.exit_code == 3
        assert "job_other" in outcome.message
        launcher.launch.assert_not_called()
        assert (settings.state_dir / "flash.lock").exists()


class TestWriteTicket:
    def test_atomic_write(self, settings):
        ticket = JobTicket.create(FlashRequest("/dev/fake0", "blink", 5), settings, job_id="job_w")
        write_ticket(ticket)

        assert ticket.ticket_path.exists()
        assert not ticket.ticket_path.with_suffix(".tmp").exists()
        loaded = JobTicket.from_dict(json.loads(ticket.ticket_path.read_text()))
        assert loaded.job_id == "job_w"
        assert loaded.settings.state_dir == settings.state_dir
