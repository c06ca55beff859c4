"""Cloud-init NoCloud seed generation for qman."""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Dict, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from qman.constants import (
    META_DATA_NAME,
    SHARE_GUEST_PATH,
    SHARE_MOUNT_TAG,
    USER_DATA_NAME,
)
from qman.exceptions import NotFoundError
from qman.models import QmanConfig
from qman.utils import ensure_directory, hash_password, log, run_tool

PROMPT_SCRIPT = (
    "# Managed by qman\n"
    'PS1="\\[\\e[0;35m\\][qman:\\h]\\[\\e[0m\\] \\u:\\w\\$ "\n'
    "export PS1\n"
)


def render_metadata(name: str) -> str:
    return (
        textwrap.dedent(
            f"""
        instance-id: iid-{name}
        local-hostname: {name}
        """
        ).strip()
        + "\n"
    )


def render_default_userdata(
    ssh_public_key: Optional[str],
    username: str,
    password_hash: Optional[str] = None,
) -> str:
    """Cloud-config giving ``username`` passwordless sudo and mounting the host share."""
    user: Dict[str, object] = {
        "name": username,
        "sudo": "ALL=(ALL) NOPASSWD:ALL",
        "shell": "/bin/bash",
        "lock_passwd": password_hash is None,
    }
    if ssh_public_key:
        user["ssh_authorized_keys"] = [ssh_public_key]
    if password_hash:
        user["passwd"] = password_hash

    doc: Dict[str, object] = {
        "users": [user],
        "ssh_pwauth": False,
        "write_files": [
            {
                "path": "/etc/profile.d/qman-prompt.sh",
                "permissions": "0644",
                "content": PROMPT_SCRIPT,
            },
        ],
        "runcmd": [
            # SELinux (RHEL family)
            [
                "sh",
                "-c",
                "command -v setenforce >/dev/null 2>&1 && setenforce 0 || true",
            ],
            [
                "sh",
                "-c",
                "test -f /etc/selinux/config"
                " && sed -i 's/^SELINUX=.*/SELINUX=disabled/' /etc/selinux/config"
                " || true",
            ],
            # AppArmor (Debian family)
            [
                "sh",
                "-c",
                "command -v systemctl >/dev/null 2>&1"
                " && systemctl disable --now apparmor"
                " || true",
            ],
            ["mkdir", "-p", SHARE_GUEST_PATH],
            ["mount", "-a"],
        ],
        "mounts": [
            [
                SHARE_MOUNT_TAG,
                SHARE_GUEST_PATH,
                "9p",
                "trans=virtio,version=9p2000.L,msize=104857600,_netdev,nofail",
                "0",
                "0",
            ]
        ],
    }
    if password_hash:
        doc["chpasswd"] = {"expire": False}
    # wide lines keep long ssh keys on one line
    return "#cloud-config\n" + yaml.safe_dump(doc, sort_keys=False, default_flow_style=False, width=4096)


class CloudInitBuilder:
    def __init__(self, config: QmanConfig) -> None:
        self.iso_tool = config.iso_tool
        self.guest_password = config.guest_password

    def build_iso(self, metadata_file: Path, userdata_file: Path, out_path: Path) -> Path:
        """Author a fresh ``cidata`` ISO; an existing file at ``out_path`` is replaced."""
        if out_path.exists():
            out_path.unlink()
        ensure_directory(out_path.parent)
        cmd = [
            self.iso_tool,
            "-output",
            str(out_path),
            "-volid",
            "cidata",
            "-joliet",
            "-rock",
            "-graft-points",
            f"{META_DATA_NAME}={metadata_file}",
            f"{USER_DATA_NAME}={userdata_file}",
        ]
        run_tool(cmd)
        log("INFO", f"Cloud-init seed written to {out_path}")
        return out_path

    def prepare(
        self,
        name: str,
        config_dir: Path,
        ssh_public_key: Optional[str],
        username: str,
        userdata_override: Optional[Path] = None,
    ) -> Tuple[Path, Path]:
        """Write meta-data and resolve the user-data file for ``name``.

        Without an override the persisted ``user-data`` is reused, or the
        default document is rendered and persisted there first.
        """
        ensure_directory(config_dir)
        meta_path = config_dir / META_DATA_NAME
        meta_path.write_text(render_metadata(name), encoding="utf-8")

        if userdata_override is not None:
            if not userdata_override.is_file():
                raise NotFoundError(f"User data file not found: {userdata_override}")
            log("INFO", f"Using user data from {userdata_override}")
            return meta_path, userdata_override

        user_path = config_dir / USER_DATA_NAME
        if user_path.is_file():
            log("INFO", f"Reusing user data {user_path}")
            return meta_path, user_path

        if not ssh_public_key:
            log("WARN", "No SSH public key found in ~/.ssh; the guest user will not accept SSH logins")
            log("WARN", "To generate one, run: ssh-keygen -t ed25519")
        password_hash = hash_password(self.guest_password) if self.guest_password else None
        user_path.write_text(
            render_default_userdata(ssh_public_key, username, password_hash),
            encoding="utf-8",
        )
        log("INFO", f"Generated default user data {user_path}")
        return meta_path, user_path
