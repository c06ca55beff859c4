"""QEMU command line rendering for qman."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import List, Optional

from qman.constants import DISPLAY_ARGS, SHARE_MOUNT_TAG, VNC_BASE_PORT
from qman.models import DisplayMode, QmanConfig, VMRecord


def render_display_args(mode: DisplayMode, vnc_port: int) -> List[str]:
    args = list(DISPLAY_ARGS[mode.value])
    if mode is DisplayMode.SILENT:
        args.extend(["-vnc", f"127.0.0.1:{vnc_port - VNC_BASE_PORT}"])
    return args


def render_qemu_args(
    config: QmanConfig,
    record: VMRecord,
    mode: DisplayMode,
    pid_file: Path,
    kvm: bool,
    seed_iso: Optional[Path] = None,
) -> List[str]:
    """Build the hypervisor argv for one VM.

    The overlay is attached read-write; the guest's SSH daemon is reachable
    on the loopback port recorded at creation time.
    """
    accel = "kvm" if kvm else "tcg"
    args = [
        config.qemu_binary,
        "-name",
        record.name,
        "-machine",
        f"q35,accel={accel}",
    ]
    if kvm:
        args.extend(["-cpu", "host"])
    args.extend(
        [
            "-m",
            str(config.memory_mb),
            "-smp",
            str(config.cpus),
            "-drive",
            f"file={record.disk},if=virtio,format=qcow2",
            "-netdev",
            f"user,id=net0,hostfwd=tcp:127.0.0.1:{record.ssh_port}-:22",
            "-device",
            "virtio-net-pci,netdev=net0",
            "-virtfs",
            (
                f"local,path={config.shared_dir},mount_tag={SHARE_MOUNT_TAG},"
                f"security_model=mapped-xattr,id={SHARE_MOUNT_TAG}"
            ),
        ]
    )
    if seed_iso is not None:
        args.extend(["-drive", f"file={seed_iso},media=cdrom,readonly=on"])
    args.extend(["-pidfile", str(pid_file)])
    args.extend(render_display_args(mode, record.vnc_port))
    if config.extra_args:
        args.extend(shlex.split(config.extra_args))
    return args
