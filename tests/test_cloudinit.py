"""Tests for qman.cloudinit module."""

from __future__ import annotations

import dataclasses
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from qman.cloudinit import CloudInitBuilder, render_default_userdata, render_metadata
from qman.exceptions import NotFoundError

LONG_KEY = "ssh-ed25519 " + "A" * 300 + " user@host"


def _ok() -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=0, stdout="", stderr="")


class TestRenderMetadata:
    def test_identity(self):
        data = yaml.safe_load(render_metadata("alpha"))
        assert data == {"instance-id": "iid-alpha", "local-hostname": "alpha"}


class TestRenderDefaultUserdata:
    def test_cloud_config_header(self):
        assert render_default_userdata(LONG_KEY, "tester").startswith("#cloud-config\n")

    def test_user_entry(self):
        doc = yaml.safe_load(render_default_userdata(LONG_KEY, "tester"))
        user = doc["users"][0]
        assert user["name"] == "tester"
        assert user["sudo"] == "ALL=(ALL) NOPASSWD:ALL"
        assert user["shell"] == "/bin/bash"
        assert user["lock_passwd"] is True
        assert user["ssh_authorized_keys"] == [LONG_KEY]
        assert "passwd" not in user
        assert "chpasswd" not in doc

    def test_key_stays_on_one_line(self):
        assert LONG_KEY in render_default_userdata(LONG_KEY, "tester")

    def test_share_mount_and_prompt(self):
        doc = yaml.safe_load(render_default_userdata(LONG_KEY, "tester"))
        assert doc["mounts"][0][:3] == ["host_share", "/mnt/shared", "9p"]
        assert "trans=virtio" in doc["mounts"][0][3]
        assert ["mkdir", "-p", "/mnt/shared"] in doc["runcmd"]
        assert doc["write_files"][0]["path"] == "/etc/profile.d/qman-prompt.sh"
        assert "PS1" in doc["write_files"][0]["content"]

    def test_security_modules_disabled(self):
        text = render_default_userdata(None, "tester")
        assert "setenforce 0" in text
        assert "SELINUX=disabled" in text
        assert "apparmor" in text

    def test_no_key(self):
        doc = yaml.safe_load(render_default_userdata(None, "tester"))
        assert "ssh_authorized_keys" not in doc["users"][0]

    def test_password_hash(self):
        doc = yaml.safe_load(render_default_userdata(LONG_KEY, "tester", password_hash="$2b$12$abc"))
        user = doc["users"][0]
        assert user["passwd"] == "$2b$12$abc"
        assert user["lock_passwd"] is False
        assert doc["chpasswd"] == {"expire": False}


@pytest.fixture
def builder(qman_config) -> CloudInitBuilder:
    return CloudInitBuilder(qman_config)


class TestBuildIso:
    def test_command(self, builder, tmp_path):
        out = tmp_path / "vm" / "cloud-init.iso"
        with patch("qman.cloudinit.run_tool", return_value=_ok()) as mock_run:
            builder.build_iso(Path("/cfg/meta-data"), Path("/home/me/custom.yaml"), out)
        assert mock_run.call_args[0][0] == [
            "genisoimage",
            "-output",
            str(out),
            "-volid",
            "cidata",
            "-joliet",
            "-rock",
            "-graft-points",
            "meta-data=/cfg/meta-data",
            "user-data=/home/me/custom.yaml",
        ]

    def test_existing_iso_replaced(self, builder, tmp_path):
        out = tmp_path / "cloud-init.iso"
        out.write_bytes(b"old seed")
        with patch("qman.cloudinit.run_tool", return_value=_ok()):
            builder.build_iso(tmp_path / "meta-data", tmp_path / "user-data", out)
        assert not out.exists()


class TestPrepare:
    def test_generates_and_persists_default(self, builder, tmp_path):
        cfg_dir = tmp_path / "cfg"
        meta, user = builder.prepare("alpha", cfg_dir, LONG_KEY, "tester")
        assert meta == cfg_dir / "meta-data"
        assert user == cfg_dir / "user-data"
        assert "iid-alpha" in meta.read_text()
        assert LONG_KEY in user.read_text()

    def test_reuses_persisted_userdata(self, builder, tmp_path):
        cfg_dir = tmp_path / "cfg"
        cfg_dir.mkdir()
        (cfg_dir / "user-data").write_text("#cloud-config\nhostname: edited\n")
        _, user = builder.prepare("alpha", cfg_dir, LONG_KEY, "tester")
        assert user.read_text() == "#cloud-config\nhostname: edited\n"

    def test_override_file(self, builder, tmp_path):
        override = tmp_path / "custom.yaml"
        override.write_text("#cloud-config\n")
        _, user = builder.prepare("alpha", tmp_path / "cfg", LONG_KEY, "tester", userdata_override=override)
        assert user == override
        assert not (tmp_path / "cfg" / "user-data").exists()

    def test_missing_override(self, builder, tmp_path):
        with pytest.raises(NotFoundError, match="User data file not found"):
            builder.prepare("alpha", tmp_path / "cfg", LONG_KEY, "tester", userdata_override=tmp_path / "nope")

    def test_warns_without_key(self, builder, tmp_path, capsys):
        builder.prepare("alpha", tmp_path / "cfg", None, "tester")
        assert "No SSH public key found" in capsys.readouterr().out

    def test_password_is_hashed(self, qman_config, tmp_path):
        cfg = dataclasses.replace(qman_config, guest_password="hunter2")
        with patch("qman.cloudinit.hash_password", return_value="$2b$12$hashed") as mock_hash:
            _, user = CloudInitBuilder(cfg).prepare("alpha", tmp_path / "cfg", LONG_KEY, "tester")
        mock_hash.assert_called_once_with("hunter2")
        text = user.read_text()
        assert "$2b$12$hashed" in text
        assert "hunter2" not in text
