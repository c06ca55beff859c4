"""VM lifecycle orchestration for qman."""

from __future__ import annotations

import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Set

from qman.cloudinit import CloudInitBuilder
from qman.constants import DISK_FILE_NAME, PID_FILE_NAME, QEMU_LOG_NAME, SEED_ISO_NAME, VM_NAME_RE
from qman.disk import DiskProvisioner
from qman.exceptions import ExternalToolError, NotFoundError, StateConflictError
from qman.models import (
    DisplayMode,
    LaunchSpec,
    QmanConfig,
    UpResult,
    VMRecord,
    VMState,
    VMStatus,
)
from qman.ports import PortAllocator
from qman.probe import ReadinessProbe
from qman.process import ProcessSupervisor
from qman.qemu import render_qemu_args
from qman.store import ConfigStore
from qman.utils import (
    confirm,
    derive_vm_name,
    ensure_directory,
    find_ssh_public_key,
    kvm_available,
    log,
    run,
    validate_disk_size,
    validate_vm_name,
)


class VMManager:
    """Lifecycle operations over the records in one pair of data/config roots."""

    def __init__(
        self,
        config: QmanConfig,
        store: Optional[ConfigStore] = None,
        ports: Optional[PortAllocator] = None,
        disks: Optional[DiskProvisioner] = None,
        cloud_init: Optional[CloudInitBuilder] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        probe: Optional[ReadinessProbe] = None,
        confirm_fn: Callable[[str], bool] = confirm,
    ) -> None:
        self.cfg = config
        self.store = store or ConfigStore(config)
        self.ports = ports or PortAllocator(config)
        self.disks = disks or DiskProvisioner(config)
        self.cloud_init = cloud_init or CloudInitBuilder(config)
        self.supervisor = supervisor or ProcessSupervisor(launch_grace=config.launch_grace)
        self.probe = probe or ReadinessProbe(
            max_attempts=config.probe_attempts,
            interval=config.probe_interval,
        )
        self.confirm = confirm_fn
        self._kvm: Optional[bool] = None

    def pid_file(self, name: str) -> Path:
        return self.store.vm_data_dir(name) / PID_FILE_NAME

    def kvm(self) -> bool:
        if self._kvm is None:
            self._kvm = kvm_available()
            if not self._kvm:
                log("WARN", "/dev/kvm not available; falling back to TCG (10-50x slower)")
        return self._kvm

    # -- state -------------------------------------------------------------

    def inspect(self, name: str, reap: bool = False) -> VMState:
        """Derive the VM's state from its pidfile.

        With ``reap`` a pidfile pointing at a dead process is removed.
        """
        pid_file = self.pid_file(name)
        if not pid_file.exists():
            return VMState.STOPPED
        pid = self.supervisor.read_pid(pid_file)
        if pid is not None and self.supervisor.is_alive(pid):
            return VMState.RUNNING
        if reap:
            pid_file.unlink(missing_ok=True)
            log("DEBUG", f"Removed stale pidfile {pid_file}")
        return VMState.STALE

    def _taken_ports(self) -> Set[int]:
        taken: Set[int] = set()
        for name in self.store.list():
            try:
                record = self.store.get(name)
            except NotFoundError:
                continue
            taken.update((record.ssh_port, record.vnc_port))
        return taken

    @staticmethod
    def _check_name(name: str) -> None:
        # ".", ".." and "" would resolve to the roots themselves
        if not VM_NAME_RE.match(name):
            raise NotFoundError(f"VM '{name}' not found (not a valid VM name)")

    def _stop(self, name: str) -> None:
        pid_file = self.pid_file(name)
        pid = self.supervisor.read_pid(pid_file)
        if pid is None:
            pid_file.unlink(missing_ok=True)
            return
        self.supervisor.stop(pid, pid_file)
        log("INFO", f"Sent termination signal to '{name}' (PID {pid})")

    # -- operations --------------------------------------------------------

    def create(self, image: Path, name: Optional[str] = None, size: Optional[str] = None) -> VMRecord:
        image = Path(image).expanduser()
        if not image.is_file():
            raise NotFoundError(f"Image not found: {image}")
        name = validate_vm_name(name or derive_vm_name(image))
        size = validate_disk_size(size or self.cfg.disk_size)

        data_dir = self.store.vm_data_dir(name)
        if self.store.exists(name) or data_dir.exists():
            raise StateConflictError(f"VM '{name}' already exists")

        ensure_directory(self.cfg.shared_dir)
        try:
            staged = self.disks.stage(image, data_dir)
            disk = self.disks.create_overlay(staged, data_dir / DISK_FILE_NAME, size)
            taken = self._taken_ports()
            ssh_port = self.ports.allocate_ssh_port(taken)
            vnc_port = self.ports.allocate_vnc_port(taken | {ssh_port})
            record = VMRecord(
                name=name,
                disk=str(disk),
                backing_file=str(staged),
                ssh_port=ssh_port,
                vnc_port=vnc_port,
            )
            # last write: the record only exists once every artifact does
            self.store.put(record)
        except Exception:
            shutil.rmtree(data_dir, ignore_errors=True)
            if not self.store.exists(name):
                shutil.rmtree(self.store.vm_config_dir(name), ignore_errors=True)
            raise
        log("SUCCESS", f"Created VM '{name}' (SSH port {ssh_port}, VNC port {vnc_port})")
        return record

    def up(
        self,
        name: str,
        mode: DisplayMode = DisplayMode.NORMAL,
        init: bool = False,
        userdata: Optional[Path] = None,
        wait: bool = True,
    ) -> UpResult:
        self._check_name(name)
        record = self.store.get(name)
        state = self.inspect(name, reap=True)
        if state is VMState.RUNNING:
            log("INFO", f"VM '{name}' is already running")
            return UpResult(name=name, already_running=True)
        if state is VMState.STALE:
            log("WARN", f"Removed stale pidfile for '{name}'")

        if not Path(record.disk).exists():
            raise NotFoundError(f"Disk for VM '{name}' not found: {record.disk}")

        data_dir = self.store.vm_data_dir(name)
        ensure_directory(self.cfg.shared_dir)
        seed_iso: Optional[Path] = None
        if init:
            meta_path, user_path = self.cloud_init.prepare(
                name,
                self.store.vm_config_dir(name),
                find_ssh_public_key(),
                self.cfg.ssh_user,
                userdata_override=userdata,
            )
            seed_iso = self.cloud_init.build_iso(meta_path, user_path, data_dir / SEED_ISO_NAME)

        pid_file = self.pid_file(name)
        argv = render_qemu_args(self.cfg, record, mode, pid_file, self.kvm(), seed_iso)
        blocking = mode is DisplayMode.CONSOLE
        log("INFO", f"Starting VM '{name}' ({mode.value} mode)")
        if blocking:
            log("INFO", "Console attached (Ctrl+A X to quit QEMU)")
        handle = self.supervisor.launch(
            LaunchSpec(
                argv=argv,
                pid_file=pid_file,
                blocking=blocking,
                log_file=data_dir / QEMU_LOG_NAME,
            )
        )
        result = UpResult(name=name, handle=handle)
        if blocking:
            log("INFO", f"VM '{name}' exited with status {handle.returncode}")
            return result

        log("SUCCESS", f"VM '{name}' started (PID {handle.pid})")
        log("INFO", f"SSH:  ssh -p {record.ssh_port} {self.cfg.ssh_user}@localhost")
        if mode is DisplayMode.SILENT:
            log("INFO", f"VNC:  127.0.0.1:{record.vnc_port}")
        if wait:
            result.probe = self.probe.start_background(record.ssh_port)
        return result

    def await_readiness(self, result: UpResult) -> Optional[bool]:
        """Block on the readiness probe started by ``up``; None when there is none."""
        if result.probe is None:
            return None
        log("INFO", f"Waiting for SSH on port {result.probe.port}...")
        ready = result.probe.wait()
        if ready:
            log("SUCCESS", f"VM '{result.name}' is accepting SSH connections")
        else:
            log("WARN", f"SSH on port {result.probe.port} not reachable yet; VM '{result.name}' left running")
        return ready

    def kill(self, name: str) -> None:
        self._check_name(name)
        self.store.get(name)
        state = self.inspect(name, reap=True)
        if state is VMState.STALE:
            raise StateConflictError(f"VM '{name}' is not running (removed stale pidfile)")
        if state is not VMState.RUNNING:
            raise StateConflictError(f"VM '{name}' is not running")
        self._stop(name)

    def _ssh_command(self, record: VMRecord) -> List[str]:
        return [
            "ssh",
            "-p",
            str(record.ssh_port),
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
            "-o",
            "LogLevel=ERROR",
            f"{self.cfg.ssh_user}@127.0.0.1",
        ]

    def ssh(self, name: str) -> int:
        self._check_name(name)
        record = self.store.get(name)
        try:
            return run(self._ssh_command(record), check=False).returncode
        except FileNotFoundError:
            raise ExternalToolError("ssh", "not found on PATH")

    def exec_command(self, name: str, command: List[str], paging: bool = False) -> int:
        self._check_name(name)
        record = self.store.get(name)
        if not record.ssh_port:
            raise NotFoundError(f"VM '{name}' has no SSH port recorded")
        cmd = self._ssh_command(record) + ["--"] + list(command)
        if not paging:
            try:
                return run(cmd, check=False).returncode
            except FileNotFoundError:
                raise ExternalToolError("ssh", "not found on PATH")

        pager_cmd = shlex.split(self.cfg.pager)
        log("DEBUG", f"Running: {' '.join(cmd)} | {' '.join(pager_cmd)}")
        try:
            remote = subprocess.Popen(cmd, stdout=subprocess.PIPE)
        except FileNotFoundError:
            raise ExternalToolError("ssh", "not found on PATH")
        try:
            pager = subprocess.Popen(pager_cmd, stdin=remote.stdout)
        except FileNotFoundError:
            remote.kill()
            remote.wait()
            raise ExternalToolError(pager_cmd[0], "pager not found on PATH")
        finally:
            if remote.stdout is not None:
                remote.stdout.close()
        pager.wait()
        return remote.wait()

    def destroy(self, name: str, force: bool = False) -> bool:
        self._check_name(name)
        config_dir = self.store.vm_config_dir(name)
        data_dir = self.store.vm_data_dir(name)
        if not config_dir.exists() and not data_dir.exists():
            raise NotFoundError(f"VM '{name}' not found")
        if not force and not self.confirm(f"Destroy VM '{name}' and all of its data?"):
            log("INFO", "Aborted")
            return False

        if self.inspect(name, reap=True) is VMState.RUNNING:
            self._stop(name)
        if data_dir.exists():
            shutil.rmtree(data_dir)
        self.store.delete(name)
        log("SUCCESS", f"Destroyed VM '{name}'")
        return True

    def list(self) -> List[VMStatus]:
        statuses = []
        for name in sorted(self.store.list()):
            try:
                ssh_port: Optional[int] = self.store.get(name).ssh_port
            except NotFoundError as exc:
                log("WARN", str(exc))
                ssh_port = None
            statuses.append(VMStatus(name=name, state=self.inspect(name), ssh_port=ssh_port))
        return statuses

    def nuke(self, force: bool = False) -> bool:
        roots = [self.cfg.data_root, self.cfg.config_root]
        listing = ", ".join(str(root) for root in roots)
        if not force and not self.confirm(f"Remove every VM and everything under {listing}?"):
            log("INFO", "Aborted")
            return False

        for name in self.store.list():
            if self.inspect(name, reap=True) is VMState.RUNNING:
                self._stop(name)
        for root in roots:
            if root.exists():
                shutil.rmtree(root)
                log("INFO", f"Removed {root}")
        log("SUCCESS", "All qman data removed")
        return True
