"""Disk format / allocation type capability matrix.

Maps a requested ``(format, allocation type)`` pair to the ``qemu-img create``
options that produce it, or rejects the pair.
"""
from __future__ import annotations

import os
from typing import List, Optional

from .errors import ValidationError

FIXED = "fixed"
DYNAMIC = "dynamic"
ALLOCATION_TYPES = (FIXED, DYNAMIC)
DEFAULT_ALLOCATION_TYPE = DYNAMIC

SUPPORTED_FORMATS = ("qcow2", "vmdk", "raw", "vdi", "vpc")
RESIZE_SUPPORTED_FORMATS = ("qcow2", "raw", "vmdk")

# format -> {allocation type: creation options}; a missing type is unsupported
_MATRIX = {
    "qcow2": {
        FIXED: ["-o", "preallocation=full"],
        DYNAMIC: ["-o", "preallocation=metadata"],
    },
    "vmdk": {
        FIXED: ["-o", "subformat=monolithicFlat"],
        DYNAMIC: ["-o", "subformat=streamOptimized"],
    },
    "raw": {
        FIXED: [],
    },
    "vdi": {
        DYNAMIC: [],
    },
    "vpc": {
        DYNAMIC: [],
    },
}

# qemu-img on Windows cannot fully preallocate qcow2 images
_QCOW2_FULL_FALLBACK = ["-o", "preallocation=metadata"]


def full_preallocation_supported() -> bool:
    return os.name != "nt"


def normalize_format(fmt: Optional[str]) -> str:
    if not fmt or not isinstance(fmt, str):
        raise ValidationError(
            f"Invalid or missing disk format. Supported formats: {', '.join(SUPPORTED_FORMATS)}"
        )
    fmt = fmt.strip().lower()
    if fmt not in SUPPORTED_FORMATS:
        raise ValidationError(
            f"Unsupported disk format '{fmt}'. Supported formats: {', '.join(SUPPORTED_FORMATS)}"
        )
    return fmt


def normalize_type(alloc_type: Optional[str]) -> str:
    if alloc_type is None or alloc_type == "":
        return DEFAULT_ALLOCATION_TYPE
    alloc_type = str(alloc_type).strip().lower()
    if alloc_type not in ALLOCATION_TYPES:
        raise ValidationError(
            f"Invalid disk type '{alloc_type}'. Supported types: {', '.join(ALLOCATION_TYPES)}"
        )
    return alloc_type


def supports(fmt: str, alloc_type: str) -> bool:
    return alloc_type in _MATRIX.get(fmt, {})


def creation_options(fmt: str, alloc_type: Optional[str] = None,
                     full_preallocation: Optional[bool] = None) -> List[str]:
    """Return the ``qemu-img create`` options for ``fmt`` and ``alloc_type``.

    Both values are normalized to lower case first. Raises ValidationError for
    an unknown format or type and for a pair the format does not support.
    ``full_preallocation`` overrides host detection for qcow2 fixed disks.
    """
    fmt = normalize_format(fmt)
    alloc_type = normalize_type(alloc_type)

    if not supports(fmt, alloc_type):
        if alloc_type == DYNAMIC:
            raise ValidationError(
                f"'{fmt}' format does not support dynamic disks. Use 'fixed' or omit the type."
            )
        raise ValidationError(
            f"'{fmt}' format does not support fixed disks. Only dynamic allocation is supported."
        )

    if full_preallocation is None:
        full_preallocation = full_preallocation_supported()
    if fmt == "qcow2" and alloc_type == FIXED and not full_preallocation:
        return list(_QCOW2_FULL_FALLBACK)
    return list(_MATRIX[fmt][alloc_type])
