"""File-per-VM metadata store.

Each VM is one pretty-printed JSON document ``<vm_dir>/<name>.json``. Writes
go through a temporary file in the same directory and ``os.replace`` so a
reader never sees a half-written record. The store does no locking of its
own; callers serialize read-modify-write sequences per VM name.
"""
from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from . import logging_config
from .disks import validate_name
from .errors import ControlPlaneError, NotFound
from .schemas import VMRecord

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_VMS)


class MetadataStore:
    def __init__(self, vm_dir: Path):
        self.vm_dir = Path(vm_dir)

    def ensure_dir(self) -> Path:
        try:
            self.vm_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ControlPlaneError(f"Failed to create VM directory {self.vm_dir}: {e}")
        return self.vm_dir

    def path_for(self, name: str) -> Path:
        return self.vm_dir / f"{validate_name(name, 'VM name')}.json"

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def _read(self, path: Path) -> VMRecord:
        with open(path, "r", encoding="utf-8") as f:
            return VMRecord.model_validate(json.load(f))

    def load(self, name: str) -> VMRecord:
        path = self.path_for(name)
        try:
            return self._read(path)
        except FileNotFoundError:
            raise NotFound(f'VM "{name}" not found')
        except (OSError, ValueError, PydanticValidationError) as e:
            raise ControlPlaneError(f'Failed to read record for VM "{name}": {e}')

    def save(self, record: VMRecord) -> Path:
        self.ensure_dir()
        path = self.path_for(record.name)
        data = json.dumps(record.to_json_dict(), indent=2)
        fd, tmp = tempfile.mkstemp(dir=self.vm_dir, prefix=f".{record.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            os.replace(tmp, path)
        except OSError as e:
            Path(tmp).unlink(missing_ok=True)
            raise ControlPlaneError(f'Failed to write record for VM "{record.name}": {e}')
        return path

    def rename(self, old_name: str, record: VMRecord) -> Path:
        """Persist ``record`` under its (new) name and drop ``old_name``'s file."""
        path = self.save(record)
        if old_name != record.name:
            self.remove(old_name)
        return path

    def remove(self, name: str) -> None:
        try:
            self.path_for(name).unlink()
        except FileNotFoundError:
            raise NotFound(f'VM "{name}" not found')
        except OSError as e:
            raise ControlPlaneError(f'Failed to delete record for VM "{name}": {e}')

    def list(self) -> List[VMRecord]:
        """Every readable record, sorted by name; unreadable ones are skipped."""
        if not self.vm_dir.is_dir():
            return []
        records = []
        for path in sorted(self.vm_dir.glob("*.json")):
            if path.name.startswith("."):
                continue
            try:
                records.append(self._read(path))
            except (OSError, ValueError, PydanticValidationError) as e:
                logger.warning("Skipping unreadable VM record %s: %s", path.name, e)
        return records

    def find(self, name: str) -> Optional[VMRecord]:
        try:
            return self.load(name)
        except NotFound:
            return None
