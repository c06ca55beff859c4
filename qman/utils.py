"""Utility functions for qman."""

from __future__ import annotations

import getpass
import os
import subprocess
import sys
from pathlib import Path
from typing import Callable, List, Optional

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from qman import constants
from qman.constants import DISK_SIZE_RE, TRUTHY, VM_NAME_RE
from qman.exceptions import ExternalToolError, UsageError

# Preferred key types first; any other *.pub is used as a fallback.
_PUBLIC_KEY_NAMES = ("id_ed25519.pub", "id_ecdsa.pub", "id_rsa.pub")


def set_verbose(enabled: bool) -> None:
    constants._LOG_VERBOSE = enabled


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not constants._LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int(name: str, raw: object, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(str(raw))
    except ValueError:
        raise UsageError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise UsageError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise UsageError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_float(name: str, raw: object, min_val: float = 0.0) -> float:
    try:
        value = float(str(raw))
    except ValueError:
        raise UsageError(f"{name} must be a number (got '{raw}')")
    if value < min_val:
        raise UsageError(f"{name} must be >= {min_val} (got {value})")
    return value


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw):
        raise UsageError(
            f"Invalid disk size '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')"
        )
    return raw


def parse_size_to_bytes(raw: str) -> int:
    validate_disk_size(raw)
    units = {"K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}
    suffix = raw[-1].upper()
    if suffix in units:
        return int(raw[:-1]) * units[suffix]
    return int(raw)


def validate_vm_name(name: str) -> str:
    if not VM_NAME_RE.match(name):
        raise UsageError(
            f"Invalid VM name '{name}'. Use letters, digits, '.', '_' or '-' (must start with a letter or digit)"
        )
    return name


def derive_vm_name(image: Path) -> str:
    """VM name from an image path: basename without its last extension."""
    return image.stem or image.name


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDWR)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def has_controlling_tty() -> bool:
    """Return True if both stdin and stdout are attached to a TTY."""
    for stream in (sys.stdin, sys.stdout):
        try:
            if not stream.isatty():
                return False
        except (AttributeError, ValueError):
            return False
    return True


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "user"


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def find_ssh_public_key(ssh_dir: Optional[Path] = None) -> Optional[str]:
    """Return the invoking user's SSH public key, or None if there is none."""
    if ssh_dir is None:
        ssh_dir = Path.home() / ".ssh"
    if not ssh_dir.is_dir():
        return None
    candidates = [ssh_dir / name for name in _PUBLIC_KEY_NAMES]
    candidates += sorted(p for p in ssh_dir.glob("*.pub") if p.name not in _PUBLIC_KEY_NAMES)
    for path in candidates:
        if not path.is_file():
            continue
        content = path.read_text(encoding="utf-8").strip()
        if content:
            log("DEBUG", f"Using SSH public key {path}")
            return content
    return None


def confirm(prompt: str, reader: Callable[[str], str] = input) -> bool:
    """Ask a yes/no question; anything but y/yes (or EOF) is a no."""
    try:
        answer = reader(f"{prompt} [y/N]: ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


def run_tool(cmd: List[str]) -> subprocess.CompletedProcess:
    """Run an external tool capturing its output; failures become ExternalToolError."""
    tool = cmd[0]
    try:
        return run(cmd, capture_output=True)
    except FileNotFoundError:
        raise ExternalToolError(tool, "not found on PATH")
    except subprocess.CalledProcessError as exc:
        raise ExternalToolError(
            tool,
            f"exited with status {exc.returncode}",
            returncode=exc.returncode,
            output=exc.stderr or exc.stdout or "",
        )
