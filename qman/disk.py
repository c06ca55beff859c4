"""Base image staging and qcow2 overlay creation."""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Dict, Optional

from qman.constants import DISK_FILE_NAME, PID_FILE_NAME, QEMU_LOG_NAME, SEED_ISO_NAME
from qman.exceptions import ExternalToolError, NotFoundError
from qman.models import QmanConfig
from qman.utils import ensure_directory, log, parse_size_to_bytes, run_tool, validate_disk_size

# Files qman itself writes into a VM data directory
_RESERVED_NAMES = {DISK_FILE_NAME, PID_FILE_NAME, QEMU_LOG_NAME, SEED_ISO_NAME}


class DiskProvisioner:
    def __init__(self, config: QmanConfig) -> None:
        self.qemu_img = config.qemu_img

    def stage(self, source: Path, dest_dir: Path) -> Path:
        """Copy the user's image verbatim into the VM's data directory."""
        if not source.is_file():
            raise NotFoundError(f"Image not found: {source}")
        ensure_directory(dest_dir)
        staged_name = source.name
        if staged_name in _RESERVED_NAMES:
            staged_name = f"base-{staged_name}"
        staged = dest_dir / staged_name
        log("INFO", f"Staging {source} -> {staged}")
        try:
            shutil.copy2(source, staged)
        except OSError as exc:
            staged.unlink(missing_ok=True)
            raise ExternalToolError("copy", f"failed to stage {source}: {exc}")
        return staged

    def image_info(self, path: Path) -> Dict[str, object]:
        result = run_tool([self.qemu_img, "info", "--output=json", str(path)])
        try:
            info = json.loads(result.stdout)
        except ValueError as exc:
            raise ExternalToolError(self.qemu_img, f"unparseable info for {path}: {exc}")
        if not isinstance(info, dict):
            raise ExternalToolError(self.qemu_img, f"unexpected info output for {path}")
        return info

    def create_overlay(self, staged: Path, dest: Path, size: Optional[str] = None) -> Path:
        """Create a qcow2 overlay at ``dest`` backed by ``staged``.

        The backing file must stay in place for the life of the overlay. The
        overlay is never made smaller than the backing image.
        """
        info = self.image_info(staged)
        backing_format = str(info.get("format") or "qcow2")
        virtual_size = int(info.get("virtual-size") or 0)

        cmd = [
            self.qemu_img,
            "create",
            "-f",
            "qcow2",
            "-b",
            str(staged),
            "-F",
            backing_format,
            str(dest),
        ]
        if size:
            requested = parse_size_to_bytes(validate_disk_size(size))
            if requested >= virtual_size:
                cmd.append(size)
            else:
                cur_gb = virtual_size // (1024**3)
                log("INFO", f"Base image already {cur_gb}G (>= {size}); overlay keeps the backing size")
        log("INFO", f"Creating overlay disk {dest} (backing {backing_format})")
        run_tool(cmd)
        return dest
