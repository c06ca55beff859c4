"""Shared test fixtures: config over tmp_path and fakes for external processes."""

from __future__ import annotations

from pathlib import Path

import pytest

from qman.disk import DiskProvisioner
from qman.exceptions import ExternalToolError
from qman.manager import VMManager
from qman.models import LaunchSpec, ProcessHandle, QmanConfig
from qman.probe import ReadinessProbe
from qman.process import ProcessSupervisor

_QMAN_ENV_VARS = [
    "QMAN_DATA_DIR",
    "QMAN_CONFIG_DIR",
    "QMAN_MEMORY",
    "QMAN_CPUS",
    "QMAN_DISK_SIZE",
    "QMAN_SSH_PORT_MIN",
    "QMAN_SSH_PORT_MAX",
    "QMAN_VNC_PORT_MIN",
    "QMAN_VNC_PORT_MAX",
    "QMAN_QEMU",
    "QMAN_QEMU_IMG",
    "QMAN_ISO_TOOL",
    "QMAN_SSH_USER",
    "QMAN_EXTRA_ARGS",
    "QMAN_PAGER",
    "PAGER",
    "QMAN_PROBE_ATTEMPTS",
    "QMAN_PROBE_INTERVAL",
    "QMAN_LAUNCH_GRACE",
    "QMAN_GUEST_PASSWORD",
    "QMAN_VERBOSE",
]


class FakeSupervisor(ProcessSupervisor):
    """Records launches; a pid counts as alive while it is in ``alive``."""

    def __init__(self) -> None:
        super().__init__(launch_grace=0)
        self.launches = []
        self.stopped = []
        self.alive = set()
        self._next_pid = 4000

    def launch(self, spec: LaunchSpec) -> ProcessHandle:
        self.launches.append(spec)
        pid = self._next_pid
        self._next_pid += 1
        if spec.blocking:
            return ProcessHandle(pid=pid, returncode=0)
        spec.pid_file.parent.mkdir(parents=True, exist_ok=True)
        spec.pid_file.write_text(f"{pid}\n")
        self.alive.add(pid)
        return ProcessHandle(pid=pid)

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def stop(self, pid: int, pid_file: Path) -> None:
        self.stopped.append(pid)
        self.alive.discard(pid)
        pid_file.unlink(missing_ok=True)


class FakeDisks(DiskProvisioner):
    """Real staging; the overlay is a placeholder file instead of a qemu-img call."""

    def __init__(self, config: QmanConfig) -> None:
        super().__init__(config)
        self.fail = False
        self.overlays = []

    def create_overlay(self, staged: Path, dest: Path, size=None) -> Path:
        if self.fail:
            raise ExternalToolError("qemu-img", "exited with status 1", returncode=1, output="No space left")
        dest.write_bytes(b"QFI\xfb")
        self.overlays.append((staged, dest, size))
        return dest


class FakeProbe(ReadinessProbe):
    def __init__(self, result: bool = True) -> None:
        super().__init__(max_attempts=1, interval=0)
        self.result = result
        self.ports = []

    def wait_for_port(self, port: int) -> bool:
        self.ports.append(port)
        return self.result


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Clear every variable load_config() reads."""
    for key in _QMAN_ENV_VARS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def qman_config(tmp_path) -> QmanConfig:
    return QmanConfig(
        data_root=tmp_path / "data",
        config_root=tmp_path / "config",
        memory_mb=2048,
        cpus=2,
        disk_size="20G",
        ssh_port_min=2222,
        ssh_port_max=65535,
        vnc_port_min=5900,
        vnc_port_max=5999,
        qemu_binary="qemu-system-x86_64",
        qemu_img="qemu-img",
        iso_tool="genisoimage",
        ssh_user="tester",
        probe_attempts=2,
        probe_interval=0.0,
        launch_grace=0.0,
    )


@pytest.fixture
def base_image(tmp_path) -> Path:
    image = tmp_path / "src" / "disk.qcow2"
    image.parent.mkdir()
    image.write_bytes(b"base image bytes")
    return image


@pytest.fixture
def fake_supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def manager(qman_config, fake_supervisor) -> VMManager:
    mgr = VMManager(
        qman_config,
        disks=FakeDisks(qman_config),
        supervisor=fake_supervisor,
        probe=FakeProbe(result=True),
        confirm_fn=lambda prompt: True,
    )
    mgr._kvm = True
    return mgr
