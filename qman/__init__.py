"""qman package."""

__all__ = [
    "cli",
    "cloudinit",
    "config",
    "constants",
    "disk",
    "exceptions",
    "manager",
    "models",
    "ports",
    "probe",
    "process",
    "qemu",
    "store",
    "utils",
]
