"""Data models for qman."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from qman.constants import (
    DEFAULT_PAGER,
    IMAGES_DIR_NAME,
    LAUNCH_GRACE,
    PROBE_ATTEMPTS,
    PROBE_INTERVAL,
    SHARED_DIR_NAME,
)


class VMState(Enum):
    RUNNING = "Running"
    STOPPED = "Stopped"
    STALE = "Stopped (stale)"  # pidfile left behind by a dead process

    @property
    def label(self) -> str:
        return "Running" if self is VMState.RUNNING else "Stopped"


class DisplayMode(Enum):
    NORMAL = "normal"
    CONSOLE = "console"
    SILENT = "silent"


@dataclass
class VMRecord:
    name: str
    disk: str
    backing_file: str
    ssh_port: int
    vnc_port: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "disk": self.disk,
            "backing_file": self.backing_file,
            "ssh_port": self.ssh_port,
            "vnc_port": self.vnc_port,
        }


@dataclass
class VMStatus:
    name: str
    state: VMState
    ssh_port: Optional[int]


@dataclass(frozen=True)
class QmanConfig:
    data_root: Path
    config_root: Path
    memory_mb: int
    cpus: int
    disk_size: str
    ssh_port_min: int
    ssh_port_max: int
    vnc_port_min: int
    vnc_port_max: int
    qemu_binary: str
    qemu_img: str
    iso_tool: str
    ssh_user: str
    extra_args: str = ""
    pager: str = DEFAULT_PAGER
    probe_attempts: int = PROBE_ATTEMPTS
    probe_interval: float = PROBE_INTERVAL
    launch_grace: float = LAUNCH_GRACE
    guest_password: Optional[str] = None

    @property
    def images_dir(self) -> Path:
        return self.data_root / IMAGES_DIR_NAME

    @property
    def shared_dir(self) -> Path:
        return self.data_root / SHARED_DIR_NAME


@dataclass
class LaunchSpec:
    argv: List[str]
    pid_file: Path
    blocking: bool
    log_file: Optional[Path] = None


@dataclass
class ProcessHandle:
    pid: int
    returncode: Optional[int] = None


@dataclass
class ProbeHandle:
    """Result slot for a readiness probe running in a background thread."""

    port: int
    thread: Optional[threading.Thread] = None
    ready: Optional[bool] = None

    def wait(self, timeout: Optional[float] = None) -> Optional[bool]:
        if self.thread is not None:
            self.thread.join(timeout)
        return self.ready


@dataclass
class UpResult:
    name: str
    already_running: bool = False
    handle: Optional[ProcessHandle] = None
    probe: Optional[ProbeHandle] = None
