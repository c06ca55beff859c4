"""Per-VM record persistence for qman."""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import List

from qman.constants import CONFIG_FILE_NAME, RECORD_KEYS
from qman.exceptions import NotFoundError
from qman.models import QmanConfig, VMRecord
from qman.utils import ensure_directory, log


class ConfigStore:
    """JSON records under ``<config root>/<name>/config.json``.

    VM names are enumerated from the image directory, so a record whose disk
    directory is gone is not listed and a disk directory without a record is.
    """

    def __init__(self, config: QmanConfig) -> None:
        self.config_root = config.config_root
        self.images_dir = config.images_dir

    def vm_config_dir(self, name: str) -> Path:
        return self.config_root / name

    def vm_data_dir(self, name: str) -> Path:
        return self.images_dir / name

    def record_path(self, name: str) -> Path:
        return self.vm_config_dir(name) / CONFIG_FILE_NAME

    def exists(self, name: str) -> bool:
        return self.record_path(name).is_file()

    def put(self, record: VMRecord) -> None:
        path = self.record_path(record.name)
        ensure_directory(path.parent)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(record.to_dict(), indent=2) + "\n", encoding="utf-8")
        tmp.replace(path)
        log("DEBUG", f"Wrote {path}")

    def get(self, name: str) -> VMRecord:
        path = self.record_path(name)
        if not path.is_file():
            raise NotFoundError(f"VM '{name}' not found (no {path})")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise NotFoundError(f"VM '{name}' has an unreadable config {path}: {exc}")
        if not isinstance(data, dict):
            raise NotFoundError(f"VM '{name}' has a malformed config {path}")
        missing = [key for key in RECORD_KEYS if key not in data]
        if missing:
            raise NotFoundError(f"VM '{name}' config {path} is missing {', '.join(missing)}")
        try:
            return VMRecord(
                name=str(data["name"]),
                disk=str(data["disk"]),
                backing_file=str(data["backing_file"]),
                ssh_port=int(data["ssh_port"]),
                vnc_port=int(data["vnc_port"]),
            )
        except (TypeError, ValueError) as exc:
            raise NotFoundError(f"VM '{name}' config {path} has invalid ports: {exc}")

    def delete(self, name: str) -> None:
        vm_dir = self.vm_config_dir(name)
        if vm_dir.exists():
            shutil.rmtree(vm_dir)
            log("DEBUG", f"Removed {vm_dir}")

    def list(self) -> List[str]:
        if not self.images_dir.is_dir():
            return []
        return [entry.name for entry in self.images_dir.iterdir() if entry.is_dir()]
