"""Tests for qman.process module."""

from __future__ import annotations

import signal
from unittest.mock import MagicMock, patch

import pytest

from qman.exceptions import ExternalToolError, QmanError
from qman.models import LaunchSpec
from qman.process import ProcessSupervisor


@pytest.fixture
def supervisor() -> ProcessSupervisor:
    return ProcessSupervisor(launch_grace=0)


class TestDetachedLaunch:
    def test_writes_pidfile(self, supervisor, tmp_path):
        proc = MagicMock(pid=4321)
        proc.poll.return_value = None
        spec = LaunchSpec(argv=["qemu", "-name", "a"], pid_file=tmp_path / "vm" / "pid", blocking=False)
        with patch("qman.process.subprocess.Popen", return_value=proc) as mock_popen:
            handle = supervisor.launch(spec)
        assert handle.pid == 4321
        assert handle.returncode is None
        assert (tmp_path / "vm" / "pid").read_text().strip() == "4321"
        assert mock_popen.call_args[1]["start_new_session"] is True

    def test_immediate_exit_reports_log_tail(self, supervisor, tmp_path):
        log_file = tmp_path / "qemu.log"
        log_file.write_text("qemu: could not open disk image\n")
        proc = MagicMock(pid=4321)
        proc.poll.return_value = 1
        spec = LaunchSpec(argv=["qemu"], pid_file=tmp_path / "pid", blocking=False, log_file=log_file)
        with patch("qman.process.subprocess.Popen", return_value=proc):
            with pytest.raises(ExternalToolError, match="could not open disk image") as exc:
                supervisor.launch(spec)
        assert exc.value.returncode == 1
        assert not (tmp_path / "pid").exists()

    def test_missing_binary(self, supervisor, tmp_path):
        spec = LaunchSpec(argv=["qemu-missing"], pid_file=tmp_path / "pid", blocking=False)
        with patch("qman.process.subprocess.Popen", side_effect=FileNotFoundError("no such file")):
            with pytest.raises(ExternalToolError, match="failed to launch"):
                supervisor.launch(spec)


class TestForegroundLaunch:
    def test_returns_exit_status_and_clears_pidfile(self, supervisor, tmp_path):
        pid_file = tmp_path / "pid"
        proc = MagicMock(pid=77)

        def _wait():
            pid_file.write_text("77\n")
            return 3

        proc.wait.side_effect = _wait
        spec = LaunchSpec(argv=["qemu", "-nographic"], pid_file=pid_file, blocking=True)
        with (
            patch("qman.process.subprocess.Popen", return_value=proc),
            patch("qman.process.signal.signal") as mock_signal,
        ):
            handle = supervisor.launch(spec)
        assert handle.returncode == 3
        assert not pid_file.exists()
        # SIGTERM handler installed then restored
        assert mock_signal.call_count == 2
        assert mock_signal.call_args_list[0][0][0] == signal.SIGTERM

    def test_keyboard_interrupt_forwarded(self, supervisor, tmp_path):
        proc = MagicMock(pid=77)
        proc.wait.side_effect = [KeyboardInterrupt, 130]
        spec = LaunchSpec(argv=["qemu"], pid_file=tmp_path / "pid", blocking=True)
        with (
            patch("qman.process.subprocess.Popen", return_value=proc),
            patch("qman.process.signal.signal"),
        ):
            handle = supervisor.launch(spec)
        proc.send_signal.assert_called_once_with(signal.SIGINT)
        assert handle.returncode == 130


class TestPidfile:
    def test_read_pid(self, tmp_path):
        pid_file = tmp_path / "pid"
        assert ProcessSupervisor.read_pid(pid_file) is None
        pid_file.write_text("123\n")
        assert ProcessSupervisor.read_pid(pid_file) == 123
        pid_file.write_text("garbage")
        assert ProcessSupervisor.read_pid(pid_file) is None
        pid_file.write_text("0")
        assert ProcessSupervisor.read_pid(pid_file) is None

    def test_is_alive(self):
        with patch("qman.process.os.kill") as mock_kill:
            assert ProcessSupervisor.is_alive(10) is True
        mock_kill.assert_called_once_with(10, 0)
        with patch("qman.process.os.kill", side_effect=ProcessLookupError):
            assert ProcessSupervisor.is_alive(10) is False
        with patch("qman.process.os.kill", side_effect=PermissionError):
            assert ProcessSupervisor.is_alive(10) is True


class TestStop:
    def test_sends_sigterm_and_removes_pidfile(self, supervisor, tmp_path):
        pid_file = tmp_path / "pid"
        pid_file.write_text("55\n")
        with patch("qman.process.os.kill") as mock_kill:
            supervisor.stop(55, pid_file)
        mock_kill.assert_called_once_with(55, signal.SIGTERM)
        assert not pid_file.exists()

    def test_already_gone(self, supervisor, tmp_path):
        pid_file = tmp_path / "pid"
        pid_file.write_text("55\n")
        with patch("qman.process.os.kill", side_effect=ProcessLookupError):
            supervisor.stop(55, pid_file)
        assert not pid_file.exists()

    def test_permission_denied(self, supervisor, tmp_path):
        pid_file = tmp_path / "pid"
        pid_file.write_text("1\n")
        with patch("qman.process.os.kill", side_effect=PermissionError):
            with pytest.raises(QmanError, match="Not permitted"):
                supervisor.stop(1, pid_file)
        assert not pid_file.exists()
