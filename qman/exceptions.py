"""Custom exceptions for qman."""

from __future__ import annotations

from typing import Optional


class QmanError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class UsageError(QmanError):
    """Missing, unknown or invalid argument."""


class NotFoundError(QmanError):
    """Unknown VM name, or a config/disk/input file that does not exist."""


class StateConflictError(QmanError):
    """Operation does not apply to the VM's current state."""


class ExternalToolError(QmanError):
    """An external binary (qemu-img, genisoimage, qemu) is missing or failed."""

    def __init__(
        self,
        tool: str,
        message: str,
        returncode: Optional[int] = None,
        output: str = "",
    ) -> None:
        self.tool = tool
        self.returncode = returncode
        self.output = output.strip()
        detail = f"{tool}: {message}"
        if self.output:
            detail += f"\n{self.output}"
        super().__init__(detail)
