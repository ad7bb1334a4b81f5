"""Disk image management on top of ``qemu-img``.

The disk directory is the inventory: every non-hidden file in it is a disk
image named ``<name>.<format>``. Nothing else is persisted; format, size and
allocation type are read back from ``qemu-img info`` on demand.
"""
from __future__ import annotations

import math
import re
import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from . import capabilities, logging_config
from .errors import Conflict, ControlPlaneError, NotFound, ToolError, ValidationError
from .locks import KeyedLock

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_DISKS)

GIB = 1024 ** 3

_SIZE_RE = re.compile(r"virtual size:.*\((\d+) bytes\)")
_FORMAT_RE = re.compile(r"file format: (\w+)")
_PREALLOC_RE = re.compile(r"preallocation: (\w+)")
# newer qemu-img releases report the vmdk subformat as "create type"
_SUBFORMAT_RE = re.compile(r"(?:subformat|create type): (\w+)")


@dataclass
class ImageInfo:
    """Fields parsed from a ``qemu-img info`` report."""

    size_bytes: int
    format: str
    preallocation: Optional[str] = None
    subformat: Optional[str] = None
    allocated_bytes: Optional[int] = None

    @property
    def size_gb(self) -> int:
        """Virtual size in GB, rounded half up."""
        return int(math.floor(self.size_bytes / GIB + 0.5))

    @property
    def size_gb_ceil(self) -> int:
        return int(math.ceil(self.size_bytes / GIB))

    @property
    def allocation_type(self) -> str:
        if self.format == "raw":
            return capabilities.FIXED
        if self.format == "qcow2":
            if self.preallocation is not None:
                return capabilities.FIXED if self.preallocation == "full" else capabilities.DYNAMIC
            # qemu-img does not always report preallocation; a fully
            # preallocated image occupies at least its virtual size on disk
            if self.allocated_bytes is not None and self.size_bytes > 0 \
                    and self.allocated_bytes >= self.size_bytes:
                return capabilities.FIXED
            return capabilities.DYNAMIC
        if self.format == "vmdk":
            return capabilities.FIXED if self.subformat == "monolithicFlat" else capabilities.DYNAMIC
        return capabilities.DYNAMIC


def parse_info(output: str, allocated_bytes: Optional[int] = None) -> ImageInfo:
    """Parse the textual report of ``qemu-img info``.

    Raises ValueError when the report has neither a virtual size nor a format.
    """
    size_match = _SIZE_RE.search(output)
    format_match = _FORMAT_RE.search(output)
    if not size_match and not format_match:
        raise ValueError("unrecognized qemu-img info output")
    prealloc_match = _PREALLOC_RE.search(output)
    subformat_match = _SUBFORMAT_RE.search(output)
    return ImageInfo(
        size_bytes=int(size_match.group(1)) if size_match else 0,
        format=format_match.group(1) if format_match else "unknown",
        preallocation=prealloc_match.group(1) if prealloc_match else None,
        subformat=subformat_match.group(1) if subformat_match else None,
        allocated_bytes=allocated_bytes,
    )


def validate_name(name, what: str = "name") -> str:
    """Reject names that are not a single, visible path component."""
    if not name or not isinstance(name, str) or not name.strip():
        raise ValidationError(f"Invalid or missing {what}")
    if "/" in name or "\\" in name or name in (".", "..") or name.startswith(".") or "\x00" in name:
        raise ValidationError(f"Invalid {what}: {name!r}")
    return name


class DiskManager:
    """Create, list, rename, resize and delete disk images in ``disk_dir``."""

    def __init__(self, disk_dir: Path, qemu_img: str = "qemu-img", timeout: float = 600.0,
                 probe_workers: int = 4, full_preallocation: Optional[bool] = None,
                 locks: Optional[KeyedLock] = None):
        self.disk_dir = Path(disk_dir)
        self.qemu_img = qemu_img
        self.timeout = timeout
        self.probe_workers = max(1, int(probe_workers))
        self.full_preallocation = full_preallocation
        self.locks = locks or KeyedLock()

    def ensure_dir(self) -> Path:
        try:
            self.disk_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ControlPlaneError(f"Failed to create disk directory {self.disk_dir}: {e}")
        return self.disk_dir

    def path_for(self, name: str, fmt: str) -> Path:
        return self.disk_dir / f"{validate_name(name, 'disk name')}.{fmt}"

    def exists(self, name: str, fmt: str) -> bool:
        try:
            return self.path_for(name, fmt).is_file()
        except ValidationError:
            return False

    def _resolve(self, filename: str) -> Path:
        return self.disk_dir / validate_name(filename, "disk filename")

    def _run(self, args: List[str]) -> subprocess.CompletedProcess:
        cmd = [self.qemu_img, *args]
        logger.debug("Running: %s", " ".join(cmd))
        try:
            return subprocess.run(cmd, check=True, capture_output=True, text=True,
                                  timeout=self.timeout)
        except FileNotFoundError:
            raise ToolError(f"{self.qemu_img} not found; cannot run disk image utility")
        except subprocess.TimeoutExpired:
            raise ToolError(f"qemu-img {args[0]} timed out after {self.timeout:g}s")
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            logger.error("qemu-img %s failed: %s", args[0], stderr)
            raise ToolError(stderr or f"qemu-img {args[0]} exited with status {e.returncode}")

    def info(self, path: Path) -> ImageInfo:
        result = self._run(["info", str(path)])
        try:
            allocated = path.stat().st_blocks * 512
        except (OSError, AttributeError):
            allocated = None
        return parse_info(result.stdout or "", allocated_bytes=allocated)

    def create(self, name, size, fmt, alloc_type=None) -> dict:
        """Create ``<disk_dir>/<name>.<fmt>`` of ``size`` GB."""
        if not name or not size or not fmt:
            raise ValidationError(
                "Invalid or missing disk parameters. "
                f"Supported formats: {', '.join(capabilities.SUPPORTED_FORMATS)}"
            )
        validate_name(name, "disk name")
        if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
            raise ValidationError(f"Invalid disk size: {size!r} (must be a positive number of GB)")
        fmt = capabilities.normalize_format(fmt)
        alloc_type = capabilities.normalize_type(alloc_type)
        options = capabilities.creation_options(fmt, alloc_type, self.full_preallocation)

        filename = f"{name}.{fmt}"
        with self.locks.hold(filename):
            self.ensure_dir()
            path = self.disk_dir / filename
            if path.exists():
                raise Conflict(f'A disk named "{filename}" already exists.')
            self._run(["create", "-f", fmt, *options, str(path), f"{size}G"])

        logger.info("Created disk %s (%dG, %s)", filename, size, alloc_type)
        return {"name": name, "format": fmt, "type": alloc_type, "size": size, "filename": filename}

    def _describe(self, path: Path) -> Optional[dict]:
        try:
            info = self.info(path)
        except (ControlPlaneError, ValueError) as e:
            logger.warning("Failed to read info for %s: %s", path.name, e)
            return None
        return {
            "name": path.stem,
            "filename": path.name,
            "size": info.size_gb,
            "format": info.format,
            "type": info.allocation_type,
        }

    def _image_files(self) -> List[Path]:
        if not self.disk_dir.is_dir():
            return []
        files = sorted(p for p in self.disk_dir.iterdir()
                       if p.is_file() and not p.name.startswith("."))
        names = {p.name for p in files}
        # monolithicFlat vmdk images keep their data in a companion extent
        return [p for p in files
                if not (p.name.endswith("-flat.vmdk")
                        and p.name[:-len("-flat.vmdk")] + ".vmdk" in names)]

    def list(self) -> List[dict]:
        files = self._image_files()
        if not files:
            return []
        with ThreadPoolExecutor(max_workers=min(self.probe_workers, len(files))) as pool:
            described = list(pool.map(self._describe, files))
        return [d for d in described if d is not None]

    def update(self, filename: str, name=None, size=None) -> dict:
        """Rename and/or grow a disk image.

        A rename keeps the original extension. When both a rename and a size
        are given, a size that would not grow the image is ignored.
        """
        if not name and not size:
            raise ValidationError("You must provide at least a new name or new size.")
        old_path = self._resolve(filename)
        if name:
            validate_name(name, "disk name")
        if size and (isinstance(size, bool) or not isinstance(size, int) or size <= 0):
            raise ValidationError(f"Invalid disk size: {size!r} (must be a positive number of GB)")

        ext = old_path.suffix.lstrip(".").lower()
        new_filename = f"{name or old_path.stem}{old_path.suffix}"
        new_path = self.disk_dir / new_filename

        with self.locks.hold(filename, new_filename):
            if not old_path.is_file():
                raise NotFound(f'Disk "{filename}" not found.')

            renamed = bool(name) and new_filename != filename
            grow_to = None
            current_gb = None
            if size:
                if ext not in capabilities.RESIZE_SUPPORTED_FORMATS:
                    raise ValidationError(
                        f'Resize not supported for format "{ext}". '
                        f"Supported formats: {', '.join(capabilities.RESIZE_SUPPORTED_FORMATS)}"
                    )
                try:
                    current_gb = self.info(old_path).size_gb_ceil
                except ValueError as e:
                    raise ToolError(f"Failed to read current size of {filename}: {e}")
                if size > current_gb:
                    grow_to = size
                elif not renamed:
                    raise ValidationError(
                        f"New size must be greater than current size ({current_gb}G)."
                    )
            elif not renamed:
                raise ValidationError(f'Disk "{filename}" already has that name.')

            if renamed:
                if new_path.exists():
                    raise Conflict(f'A disk named "{new_filename}" already exists.')
                if ext == "vmdk" and (self.disk_dir / f"{old_path.stem}-flat.vmdk").exists():
                    raise ValidationError(
                        f'Cannot rename "{filename}": its data lives in a separate flat extent.'
                    )
                try:
                    old_path.rename(new_path)
                except OSError as e:
                    raise ControlPlaneError(f"Failed to rename disk: {e}")
                logger.info("Renamed disk %s -> %s", filename, new_filename)

            if grow_to is not None:
                try:
                    self._run(["resize", str(new_path), f"{grow_to}G"])
                except ToolError as e:
                    if renamed:
                        try:
                            new_path.rename(old_path)
                        except OSError as rollback_error:
                            logger.error("Failed to restore %s after failed resize: %s",
                                         filename, rollback_error)
                            raise ToolError(f'Failed to resize disk (now named "{new_filename}"): {e}')
                        logger.info("Restored disk name %s after failed resize", filename)
                    raise ToolError(f"Failed to resize disk: {e}")
                logger.info("Resized disk %s %dG -> %dG", new_filename, current_gb, grow_to)

        if grow_to is not None and renamed:
            message = (f'Disk "{filename}" renamed to "{new_filename}" and resized '
                       f"from {current_gb}G to {grow_to}G.")
        elif grow_to is not None:
            message = f'Disk "{new_filename}" resized from {current_gb}G to {grow_to}G.'
        else:
            message = f'Disk "{filename}" successfully renamed to "{new_filename}".'
        return {"message": message, "filename": new_filename}

    def delete(self, filename: str) -> None:
        path = self._resolve(filename)
        with self.locks.hold(filename):
            if not path.is_file():
                raise NotFound(f'Disk "{filename}" not found.')
            if filename.lower().endswith("-flat.vmdk") \
                    and (self.disk_dir / (filename[:-len("-flat.vmdk")] + ".vmdk")).is_file():
                raise ValidationError(
                    f'Cannot delete "{filename}": it is the data extent of another disk.'
                )
            extent = self.disk_dir / f"{path.stem}-flat.vmdk"
            try:
                path.unlink()
                if path.suffix.lower() == ".vmdk" and extent.is_file():
                    extent.unlink()
            except FileNotFoundError:
                raise NotFound(f'Disk "{filename}" not found.')
            except OSError as e:
                raise ControlPlaneError(f"Failed to delete disk: {e}")
        logger.info("Deleted disk %s", filename)
