"""Configuration loading for qman.

Settings are resolved once at startup into an immutable ``QmanConfig``.
Precedence: ``QMAN_*`` environment variables, then ``<config root>/defaults.yaml``,
then built-in defaults.
"""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Dict, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from qman.constants import (
    DEFAULT_CONFIG_ROOT,
    DEFAULT_CPUS,
    DEFAULT_DATA_ROOT,
    DEFAULT_DISK_SIZE,
    DEFAULT_ISO_TOOL,
    DEFAULT_MEMORY_MB,
    DEFAULT_PAGER,
    DEFAULT_QEMU_BINARY,
    DEFAULT_QEMU_IMG,
    DEFAULTS_FILE_NAME,
    LAUNCH_GRACE,
    PROBE_ATTEMPTS,
    PROBE_INTERVAL,
    SSH_PORT_RANGE,
    VNC_BASE_PORT,
    VNC_PORT_RANGE,
)
from qman.exceptions import UsageError
from qman.models import QmanConfig
from qman.utils import current_user, get_env, log, parse_float, parse_int, validate_disk_size


def load_defaults_file(path: Path) -> Dict[str, object]:
    """Read the optional YAML defaults file; a missing file yields an empty mapping."""
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise UsageError(f"Invalid defaults file {path}: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise UsageError(f"Defaults file {path} must contain a mapping")
    log("DEBUG", f"Loaded defaults from {path}")
    return {str(k).lower(): v for k, v in data.items()}


class _Resolver:
    def __init__(self, file_values: Dict[str, object]) -> None:
        self.file_values = file_values

    def get(self, key: str, env: str, default: object) -> object:
        raw = get_env(env)
        if raw is not None and raw != "":
            return raw
        if key in self.file_values and self.file_values[key] is not None:
            return self.file_values[key]
        return default


def _port_range(resolver: _Resolver, prefix: str, bounds: Tuple[int, int]) -> Tuple[int, int]:
    key = prefix.lower()
    low_env = f"QMAN_{prefix}_PORT_MIN"
    high_env = f"QMAN_{prefix}_PORT_MAX"
    low = parse_int(low_env, resolver.get(f"{key}_port_min", low_env, bounds[0]), 1, 65535)
    high = parse_int(high_env, resolver.get(f"{key}_port_max", high_env, bounds[1]), 1, 65535)
    if low > high:
        raise UsageError(f"{prefix} port range is empty ({low} > {high})")
    return low, high


def load_config(defaults_file: Optional[Path] = None) -> QmanConfig:
    config_root = Path(get_env("QMAN_CONFIG_DIR") or DEFAULT_CONFIG_ROOT).expanduser().resolve()
    if defaults_file is None:
        defaults_file = config_root / DEFAULTS_FILE_NAME
    resolver = _Resolver(load_defaults_file(defaults_file))

    # stored disk and backing paths must be absolute
    data_root = Path(str(resolver.get("data_root", "QMAN_DATA_DIR", DEFAULT_DATA_ROOT)))
    data_root = data_root.expanduser().resolve()
    memory_mb = parse_int("QMAN_MEMORY", resolver.get("memory_mb", "QMAN_MEMORY", DEFAULT_MEMORY_MB), 128)
    cpus = parse_int("QMAN_CPUS", resolver.get("cpus", "QMAN_CPUS", DEFAULT_CPUS), 1)
    disk_size = validate_disk_size(str(resolver.get("disk_size", "QMAN_DISK_SIZE", DEFAULT_DISK_SIZE)))
    ssh_min, ssh_max = _port_range(resolver, "SSH", SSH_PORT_RANGE)
    vnc_min, vnc_max = _port_range(resolver, "VNC", VNC_PORT_RANGE)
    if vnc_min < VNC_BASE_PORT:
        raise UsageError(f"VNC ports start at {VNC_BASE_PORT} (got {vnc_min})")

    extra_args = str(resolver.get("extra_args", "QMAN_EXTRA_ARGS", ""))
    try:
        shlex.split(extra_args)
    except ValueError as exc:
        raise UsageError(f"QMAN_EXTRA_ARGS cannot be parsed: {exc}")

    pager = str(resolver.get("pager", "QMAN_PAGER", get_env("PAGER") or DEFAULT_PAGER))
    password = resolver.get("guest_password", "QMAN_GUEST_PASSWORD", None)
    probe_attempts = parse_int(
        "QMAN_PROBE_ATTEMPTS", resolver.get("probe_attempts", "QMAN_PROBE_ATTEMPTS", PROBE_ATTEMPTS), 1
    )
    probe_interval = parse_float(
        "QMAN_PROBE_INTERVAL", resolver.get("probe_interval", "QMAN_PROBE_INTERVAL", PROBE_INTERVAL)
    )
    launch_grace = parse_float(
        "QMAN_LAUNCH_GRACE", resolver.get("launch_grace", "QMAN_LAUNCH_GRACE", LAUNCH_GRACE)
    )

    return QmanConfig(
        data_root=data_root,
        config_root=config_root,
        memory_mb=memory_mb,
        cpus=cpus,
        disk_size=disk_size,
        ssh_port_min=ssh_min,
        ssh_port_max=ssh_max,
        vnc_port_min=vnc_min,
        vnc_port_max=vnc_max,
        qemu_binary=str(resolver.get("qemu_binary", "QMAN_QEMU", DEFAULT_QEMU_BINARY)),
        qemu_img=str(resolver.get("qemu_img", "QMAN_QEMU_IMG", DEFAULT_QEMU_IMG)),
        iso_tool=str(resolver.get("iso_tool", "QMAN_ISO_TOOL", DEFAULT_ISO_TOOL)),
        ssh_user=str(resolver.get("ssh_user", "QMAN_SSH_USER", current_user())),
        extra_args=extra_args,
        pager=pager,
        probe_attempts=probe_attempts,
        probe_interval=probe_interval,
        launch_grace=launch_grace,
        guest_password=str(password) if password else None,
    )
