"""Hypervisor process supervision through pidfiles."""

from __future__ import annotations

import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Optional

from qman.exceptions import ExternalToolError, QmanError
from qman.models import LaunchSpec, ProcessHandle
from qman.utils import ensure_directory, log


def _tail(path: Optional[Path], lines: int = 20) -> str:
    if path is None or not path.exists():
        return ""
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    return "\n".join(content.splitlines()[-lines:])


class ProcessSupervisor:
    """Start, probe and stop hypervisor processes.

    Liveness is only ever derived from the pidfile plus ``os.kill(pid, 0)``;
    a recycled PID belonging to an unrelated process reads as alive.
    """

    def __init__(self, launch_grace: float = 1.0) -> None:
        self.launch_grace = launch_grace

    def launch(self, spec: LaunchSpec) -> ProcessHandle:
        if spec.blocking:
            return self._run_foreground(spec)
        return self._start_detached(spec)

    def _run_foreground(self, spec: LaunchSpec) -> ProcessHandle:
        log("DEBUG", f"Running: {' '.join(spec.argv)}")
        try:
            proc = subprocess.Popen(spec.argv)
        except OSError as exc:
            raise ExternalToolError(spec.argv[0], f"failed to launch: {exc}")

        def _terminate(signum, frame):
            proc.terminate()

        prev_sigterm = signal.signal(signal.SIGTERM, _terminate)
        try:
            returncode = proc.wait()
        except KeyboardInterrupt:
            proc.send_signal(signal.SIGINT)
            returncode = proc.wait()
        finally:
            signal.signal(signal.SIGTERM, prev_sigterm)
        if spec.pid_file.exists() and self.read_pid(spec.pid_file) == proc.pid:
            spec.pid_file.unlink(missing_ok=True)
        return ProcessHandle(pid=proc.pid, returncode=returncode)

    def _start_detached(self, spec: LaunchSpec) -> ProcessHandle:
        log("DEBUG", f"Running: {' '.join(spec.argv)}")
        ensure_directory(spec.pid_file.parent)
        if spec.log_file is not None:
            ensure_directory(spec.log_file.parent)
            stderr = open(spec.log_file, "a", encoding="utf-8")
        else:
            stderr = subprocess.DEVNULL
        try:
            proc = subprocess.Popen(
                spec.argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=stderr,
                start_new_session=True,
            )
        except OSError as exc:
            raise ExternalToolError(spec.argv[0], f"failed to launch: {exc}")
        finally:
            if stderr is not subprocess.DEVNULL:
                stderr.close()

        # An immediate exit means bad arguments, a locked disk, missing firmware...
        time.sleep(self.launch_grace)
        returncode = proc.poll()
        if returncode is not None:
            raise ExternalToolError(
                spec.argv[0],
                f"exited immediately with status {returncode}",
                returncode=returncode,
                output=_tail(spec.log_file),
            )

        spec.pid_file.write_text(f"{proc.pid}\n", encoding="utf-8")
        return ProcessHandle(pid=proc.pid)

    @staticmethod
    def read_pid(pid_file: Path) -> Optional[int]:
        try:
            raw = pid_file.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        try:
            pid = int(raw)
        except ValueError:
            return None
        return pid if pid > 0 else None

    @staticmethod
    def is_alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # exists but owned by someone else
            return True
        return True

    def stop(self, pid: int, pid_file: Path) -> None:
        """Send a single SIGTERM and drop the pidfile, whether or not the process exits."""
        try:
            os.kill(pid, signal.SIGTERM)
            log("DEBUG", f"Sent SIGTERM to {pid}")
        except ProcessLookupError:
            log("DEBUG", f"Process {pid} already gone")
        except PermissionError:
            raise QmanError(f"Not permitted to signal process {pid}")
        finally:
            pid_file.unlink(missing_ok=True)
