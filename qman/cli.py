"""CLI entry points for qman."""

from __future__ import annotations

import argparse
import dataclasses
from pathlib import Path
from typing import List, Optional

from qman.config import load_config
from qman.constants import SSH_FAILURE_STATUS, _SENSITIVE_FIELDS
from qman.exceptions import QmanError, UsageError
from qman.manager import VMManager
from qman.models import DisplayMode, QmanConfig, VMStatus
from qman.utils import log, set_verbose


def show_defaults(cfg: QmanConfig) -> None:
    """Print the resolved configuration."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name in _SENSITIVE_FIELDS and value:
            print(f"  {field.name}: ********")
        else:
            print(f"  {field.name}: {value}")
    print(f"  images_dir: {cfg.images_dir}")
    print(f"  shared_dir: {cfg.shared_dir}")


def print_vm_table(statuses: List[VMStatus]) -> None:
    if not statuses:
        log("INFO", "No VMs found")
        return
    width = max(len("NAME"), max(len(s.name) for s in statuses))
    print(f"{'NAME':<{width}}  {'STATUS':<8}  {'SSH PORT':<8}")
    print("-" * (width + 20))
    for status in statuses:
        port = str(status.ssh_port) if status.ssh_port is not None else "-"
        print(f"{status.name:<{width}}  {status.state.label:<8}  {port:<8}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="qman", description="Local QEMU virtual machine manager")
    parser.add_argument("-d", dest="debug", action="store_true", help="Verbose output: log every external command")
    sub = parser.add_subparsers(dest="command", metavar="<command>")

    p = sub.add_parser("create", help="Create a VM from a base disk image")
    p.add_argument("image", type=Path, help="Base disk image (copied, then used as backing file)")
    p.add_argument("-n", dest="name", help="VM name (default: image basename)")
    p.add_argument("-s", dest="size", help="Overlay disk size, e.g. 40G")

    p = sub.add_parser("up", help="Start a VM")
    p.add_argument("name")
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("-c", dest="console", action="store_true", help="Console mode (foreground, no graphics)")
    mode.add_argument("-s", dest="silent", action="store_true", help="Silent mode (headless, VNC on the VM's port)")
    p.add_argument(
        "-init",
        dest="init",
        nargs="?",
        const="",
        default=None,
        metavar="USERDATA",
        help="Attach a freshly built cloud-init seed (optionally from a user-data file)",
    )

    p = sub.add_parser("kill", help="Stop a running VM")
    p.add_argument("name")

    p = sub.add_parser(
        "ssh",
        help="Open an SSH session to a VM",
        description="Exits with the session's status, or 1 when ssh cannot connect.",
    )
    p.add_argument("name")

    p = sub.add_parser(
        "exec",
        help="Run a command in a VM over SSH",
        description="Exits with the remote command's status, or 1 when ssh cannot connect.",
    )
    p.add_argument("-p", dest="paging", action="store_true", help="Pipe output through the pager")
    p.add_argument("name")
    p.add_argument("cmd", nargs=argparse.REMAINDER, help="Command to run")

    p = sub.add_parser("destroy", help="Delete a VM and all its data")
    p.add_argument("name")
    p.add_argument("-f", dest="force", action="store_true", help="Do not ask for confirmation")

    sub.add_parser("list", help="List VMs")
    sub.add_parser("nuke", help="Delete every VM, the shared directory and all configuration")
    sub.add_parser("show-defaults", help="Show the resolved configuration")
    return parser


def _display_mode(args: argparse.Namespace) -> DisplayMode:
    if args.console:
        return DisplayMode.CONSOLE
    if args.silent:
        return DisplayMode.SILENT
    return DisplayMode.NORMAL


def _ssh_status(returncode: int) -> int:
    """Map ssh's own failure status (255) to 1; remote exit codes pass through."""
    if returncode == SSH_FAILURE_STATUS:
        log("ERROR", "SSH connection failed (is the VM up and its SSH server ready?)")
        return 1
    return returncode


def dispatch(args: argparse.Namespace, cfg: QmanConfig, mgr: VMManager) -> int:
    command = args.command
    if command == "create":
        mgr.create(args.image, name=args.name, size=args.size)
        return 0
    if command == "up":
        userdata = Path(args.init).expanduser() if args.init else None
        result = mgr.up(args.name, mode=_display_mode(args), init=args.init is not None, userdata=userdata)
        if result.handle is not None and result.handle.returncode not in (None, 0):
            log("WARN", f"Console exited with status {result.handle.returncode}")
            return 1
        try:
            mgr.await_readiness(result)
        except KeyboardInterrupt:
            log("WARN", f"Stopped waiting for SSH; VM '{result.name}' left running")
        return 0
    if command == "kill":
        mgr.kill(args.name)
        return 0
    if command == "ssh":
        return _ssh_status(mgr.ssh(args.name))
    if command == "exec":
        cmd = list(args.cmd)
        paging = args.paging
        # REMAINDER swallows a -p given after the name
        if cmd and cmd[0] == "-p":
            paging = True
            cmd = cmd[1:]
        if cmd and cmd[0] == "--":
            cmd = cmd[1:]
        if not cmd:
            raise UsageError("exec requires a command")
        return _ssh_status(mgr.exec_command(args.name, cmd, paging=paging))
    if command == "destroy":
        mgr.destroy(args.name, force=args.force)
        return 0
    if command == "list":
        print_vm_table(mgr.list())
        return 0
    if command == "nuke":
        mgr.nuke()
        return 0
    if command == "show-defaults":
        show_defaults(cfg)
        return 0
    raise UsageError(f"Unknown command '{command}'")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        # argparse exits 2 on bad usage and 0 for --help
        return 0 if exc.code in (0, None) else 1

    if args.debug:
        set_verbose(True)
    if not args.command:
        parser.print_help()
        return 1

    try:
        cfg = load_config()
        mgr = VMManager(cfg)
        return dispatch(args, cfg, mgr)
    except QmanError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
