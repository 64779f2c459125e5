"""Unit tests for process tree discovery and cleanup."""

import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import psutil

from flashguard.session.process_tracker import find_job_processes, is_live, kill_process_tree, read_pid_file, terminate_processes


def _proc(pid: int, cmdline: list[str]) -> MagicMock:
    proc = MagicMock()
    proc.pid = pid
    proc.info = {"pid": pid, "cmdline": cmdline}
    return proc


class TestReadPidFile:
    def test_valid(self, tmp_path: Path):
        pid_file = tmp_path / "job.pid"
        pid_file.write_text("1234\n")
        assert read_pid_file(pid_file) == 1234

    def test_missing_and_corrupted(self, tmp_path: Path):
        assert read_pid_file(tmp_path / "missing.pid") is None
        bad = tmp_path / "bad.pid"
        bad.write_text("abc")
        assert read_pid_file(bad) is None


class TestFindJobProcesses:
    def test_matches_marker_and_pid_file(self, tmp_path: Path):
        """Test processes are found by ticket path on the command line and by pid file."""
        marker = str(tmp_path / "request_job_1.json")
        pid_file = tmp_path / "job_job_1.pid"
        pid_file.write_text("300")

        procs = [
            _proc(100, ["python", "-m", "flashguard.session.job", "--request", marker]),
            _proc(200, ["vim", "notes.txt"]),
            _proc(os.getpid(), ["pytest", marker]),
        ]
        from_pid_file = MagicMock(pid=300)

        with patch("flashguard.session.process_tracker.psutil.process_iter", return_value=procs), \
             patch("flashguard.session.process_tracker.psutil.Process", return_value=from_pid_file):
            found = find_job_processes(marker, pid_file)

        assert sorted(p.pid for p in found) == [100, 300]

    def test_dead_pid_file_ignored(self, tmp_path: Path):
        pid_file = tmp_path / "job.pid"
        pid_file.write_text("300")
        with patch("flashguard.session.process_tracker.psutil.process_iter", return_value=[]), \
             patch("flashguard.session.process_tracker.psutil.Process", side_effect=psutil.NoSuchProcess(300)):
            assert find_job_processes("marker", pid_file) == []


class TestKillProcessTree:
    def test_terminate_then_kill_stragglers(self):
        gentle = MagicMock(pid=1)
        stubborn = MagicMock(pid=2)
        with patch("flashguard.session.process_tracker.psutil.wait_procs", return_value=([gentle], [stubborn])):
            assert terminate_processes([gentle, stubborn], timeout=0.1) == 2

        gentle.terminate.assert_called_once()
        gentle.kill.assert_not_called()
        stubborn.kill.assert_called_once()

    def test_children_before_root(self):
        """Test descendants are signalled before their root."""
        order = []
        child = MagicMock(pid=11)
        child.terminate.side_effect = lambda: order.append(11)
        root = MagicMock(pid=10)
        root.children.return_value = [child]
        root.terminate.side_effect = lambda: order.append(10)

        with patch("flashguard.session.process_tracker.psutil.wait_procs", return_value=([root, child], [])):
            assert kill_process_tree([root], timeout=0.1) == 2

        assert order == [11, 10]

    def test_nothing_to_kill(self):
        assert kill_process_tree([]) == 0


class TestIsLive:
    def test_running_zombie_and_gone(self):
        running = MagicMock()
        running.status.return_value = psutil.STATUS_RUNNING
        zombie = MagicMock()
        zombie.status.return_value = psutil.STATUS_ZOMBIE
        gone = MagicMock()
        gone.status.side_effect = psutil.NoSuchProcess(1)

        assert is_live(running)
        assert not is_live(zombie)
        assert not is_live(gone)
