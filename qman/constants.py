"""Global constants and default paths for qman."""

from __future__ import annotations

import os
import re
from pathlib import Path

# Default roots; overridable through QMAN_DATA_DIR / QMAN_CONFIG_DIR.
DEFAULT_DATA_ROOT = Path.home() / ".local" / "share" / "qman"
DEFAULT_CONFIG_ROOT = Path.home() / ".config" / "qman"
DEFAULTS_FILE_NAME = "defaults.yaml"

IMAGES_DIR_NAME = "images"
SHARED_DIR_NAME = "shared"

# Per-VM file names
CONFIG_FILE_NAME = "config.json"
DISK_FILE_NAME = "disk.qcow2"
PID_FILE_NAME = "pid"
SEED_ISO_NAME = "cloud-init.iso"
QEMU_LOG_NAME = "qemu.log"
META_DATA_NAME = "meta-data"
USER_DATA_NAME = "user-data"

RECORD_KEYS = ("name", "disk", "backing_file", "ssh_port", "vnc_port")

TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_MEMORY_MB = 4096
DEFAULT_CPUS = 2
DEFAULT_DISK_SIZE = "20G"

SSH_PORT_RANGE = (2222, 65535)
VNC_PORT_RANGE = (5900, 5999)
VNC_BASE_PORT = 5900
PORT_ALLOC_ATTEMPTS = 32

SSH_FAILURE_STATUS = 255

PROBE_ATTEMPTS = 60
PROBE_INTERVAL = 2.0
LAUNCH_GRACE = 1.0

DEFAULT_QEMU_BINARY = "qemu-system-x86_64"
DEFAULT_QEMU_IMG = "qemu-img"
DEFAULT_ISO_TOOL = "genisoimage"
DEFAULT_PAGER = "less -R"

# 9p share exposed to every guest
SHARE_MOUNT_TAG = "host_share"
SHARE_GUEST_PATH = "/mnt/shared"

DISPLAY_ARGS = {
    "normal": ["-device", "virtio-vga-gl", "-display", "gtk,gl=on"],
    "console": ["-nographic"],
    # silent also gets "-vnc" appended with the VM's display number
    "silent": ["-display", "none"],
}

_LOG_VERBOSE = os.environ.get("QMAN_VERBOSE", "").lower() in TRUTHY

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
VM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

_SENSITIVE_FIELDS = {"guest_password"}
