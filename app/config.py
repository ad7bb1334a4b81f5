"""Runtime settings read from QVM_* environment variables."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _env_path(name: str, default: Path) -> Path:
    value = os.environ.get(name)
    return Path(value) if value else default


@dataclass
class Settings:
    disk_dir: Path
    iso_dir: Path
    vm_dir: Path
    qemu_img: str = "qemu-img"
    qemu_bin: str = "qemu-system-x86_64"
    tool_timeout: float = 600.0
    probe_workers: int = 4
    observer_interval: float = 5.0

    @classmethod
    def from_env(cls, data_dir: Optional[Path] = None) -> "Settings":
        """Build settings from the environment.

        ``QVM_DATA_DIR`` (or ``data_dir``) is the base for the disk, media and
        VM record directories unless each one is overridden individually.
        """
        base = Path(data_dir or os.environ.get("QVM_DATA_DIR", "./data"))
        qemu_img = os.environ.get("QVM_QEMU_IMG", "qemu-img")
        qemu_bin = os.environ.get("QVM_QEMU_BIN", "qemu-system-x86_64")
        return cls(
            disk_dir=_env_path("QVM_DISK_DIR", base / "disks"),
            iso_dir=_env_path("QVM_ISO_DIR", base / "iso"),
            vm_dir=_env_path("QVM_VM_DIR", base / "vms"),
            qemu_img=shutil.which(qemu_img) or qemu_img,
            qemu_bin=shutil.which(qemu_bin) or qemu_bin,
            tool_timeout=float(os.environ.get("QVM_TOOL_TIMEOUT", "600")),
            probe_workers=max(1, int(os.environ.get("QVM_PROBE_WORKERS", "4"))),
            observer_interval=float(os.environ.get("QVM_OBSERVER_INTERVAL", "5")),
        )

    def ensure_dirs(self) -> None:
        for d in (self.disk_dir, self.iso_dir, self.vm_dir):
            d.mkdir(parents=True, exist_ok=True)
