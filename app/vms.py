"""VM lifecycle on top of the process supervisor and the metadata store.

A VM is Running when its record carries a pid and Stopped/Defined when it
does not. The pid is a last-known handle: it is re-verified against the OS
before start, stop and delete act on it, and ``list`` reports liveness as a
separate derived ``running`` field without rewriting the record.
"""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from . import capabilities, logging_config
from .disks import DiskManager, validate_name
from .errors import Conflict, ControlPlaneError, InvalidState, NotFound, SupervisorError, ValidationError
from .locks import KeyedLock
from .metadata_store import MetadataStore
from .schemas import VMRecord, VMStatus
from .supervisor import ProcessSupervisor

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_VMS)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _positive_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"Invalid {field}: {value!r} (must be a positive integer)")
    return value


class VMManager:
    def __init__(self, store: MetadataStore, supervisor: ProcessSupervisor, disks: DiskManager,
                 iso_dir: Path, locks: Optional[KeyedLock] = None,
                 clock: Callable[[], str] = utc_timestamp):
        self.store = store
        self.supervisor = supervisor
        self.disks = disks
        self.iso_dir = Path(iso_dir)
        self.locks = locks or KeyedLock()
        self.clock = clock

    def list_isos(self) -> List[str]:
        if not self.iso_dir.is_dir():
            return []
        return sorted(p.name for p in self.iso_dir.iterdir()
                      if p.is_file() and p.name.lower().endswith(".iso"))

    def _resolve_refs(self, disk_name: str, fmt: str, iso: Optional[str]) -> Tuple[Path, Optional[Path]]:
        if not self.disks.exists(disk_name, fmt):
            raise NotFound("Disk not found")
        disk_path = self.disks.path_for(disk_name, fmt)
        iso_path = None
        if iso:
            iso_path = self.iso_dir / validate_name(iso, "ISO name")
            if not iso_path.is_file():
                raise NotFound("ISO not found")
        return disk_path, iso_path

    def build_args(self, record: VMRecord) -> List[str]:
        """Emulator argument vector for ``record``; validates its disk and media."""
        disk_path, iso_path = self._resolve_refs(record.disk_name, record.format, record.iso)
        args = [
            "-name", record.name,
            "-smp", str(record.cpu),
            "-m", str(record.memory),
            "-hda", str(disk_path),
        ]
        if iso_path is not None:
            args.extend(["-cdrom", str(iso_path), "-boot", "d"])
        return args

    def _launch(self, record: VMRecord) -> VMRecord:
        """Spawn the emulator for ``record`` and persist the new runtime handle."""
        pid = self.supervisor.spawn(self.build_args(record))
        record.pid = pid
        record.started_at = self.clock()
        try:
            self.store.save(record)
        except ControlPlaneError:
            # the record is the only handle on the process; don't leave it orphaned
            try:
                self.supervisor.terminate(pid)
            except SupervisorError as e:
                logger.warning("Failed to stop orphaned process %d for VM %s: %s", pid, record.name, e)
            raise
        logger.info('VM "%s" started with PID %d', record.name, pid)
        return record

    def create(self, name=None, cpu=None, memory=None, disk_name=None, fmt=None, iso=None) -> VMRecord:
        if not name or not cpu or not memory or not disk_name or not fmt:
            raise ValidationError("Missing required parameters")
        validate_name(name, "VM name")
        record = VMRecord(
            name=name,
            cpu=_positive_int(cpu, "cpu"),
            memory=_positive_int(memory, "memory"),
            disk_name=validate_name(disk_name, "disk name"),
            format=capabilities.normalize_format(fmt),
            iso=iso or None,
        )
        with self.locks.hold(name):
            if self.store.exists(name):
                raise Conflict(f'A VM named "{name}" already exists.')
            return self._launch(record)

    def start(self, name: str) -> VMRecord:
        with self.locks.hold(name):
            record = self.store.load(name)
            if record.pid and self.supervisor.is_alive(record.pid):
                raise InvalidState(f'VM "{name}" is already running (PID {record.pid})')
            return self._launch(record)

    def stop(self, name: str) -> Tuple[VMRecord, bool]:
        """Terminate the VM's process and clear its runtime handle.

        Returns the updated record and whether a live process was signaled.
        """
        with self.locks.hold(name):
            record = self.store.load(name)
            if not record.pid:
                raise InvalidState(f'VM "{name}" is not running')
            signaled = self.supervisor.terminate(record.pid)
            if not signaled:
                logger.warning("VM process PID %d already not running.", record.pid)
            record.pid = None
            record.started_at = None
            self.store.save(record)
        logger.info('VM "%s" stopped', name)
        return record, signaled

    def delete(self, name: str) -> bool:
        """Remove the VM record, terminating its process first if it is alive.

        Returns whether a live process was signaled. A failure to stop the
        process is logged and does not keep the record. An unreadable record
        is removed without touching any process, since its pid is unknown.
        """
        with self.locks.hold(name):
            try:
                record = self.store.load(name)
            except NotFound:
                raise
            except ControlPlaneError as e:
                if not self.store.exists(name):
                    raise
                logger.warning('Removing unreadable record for VM "%s": %s', name, e)
                record = None
            killed = False
            if record is not None and record.pid:
                try:
                    if self.supervisor.is_alive(record.pid):
                        killed = self.supervisor.terminate(record.pid)
                    else:
                        logger.warning("VM process PID %d already not running.", record.pid)
                except SupervisorError as e:
                    logging_config.UnifiedLogger.log_error(logger, f'Stopping VM "{name}" during delete', e)
            self.store.remove(name)
        logger.info('VM "%s" deleted', name)
        return killed

    def edit(self, name: str, cpu=None, memory=None, new_name=None) -> VMRecord:
        """Change cpu, memory or name. Takes effect on the next start."""
        if new_name is not None:
            validate_name(new_name, "VM name")
        with self.locks.hold(name, new_name or name):
            record = self.store.load(name)
            changed = False
            if cpu is not None and _positive_int(cpu, "cpu") != record.cpu:
                record.cpu = cpu
                changed = True
            if memory is not None and _positive_int(memory, "memory") != record.memory:
                record.memory = memory
                changed = True
            if new_name and new_name != name:
                if self.store.exists(new_name):
                    raise Conflict(f'A VM named "{new_name}" already exists.')
                record.name = new_name
                changed = True
            if not changed:
                raise ValidationError("Nothing to update: provide a different cpu, memory or newName.")
            self.store.rename(name, record)
        logger.info('VM "%s" updated', record.name)
        return record

    def list(self) -> List[VMStatus]:
        statuses = []
        for record in self.store.list():
            status = VMStatus(**record.model_dump())
            if record.pid:
                try:
                    status.running = self.supervisor.is_alive(record.pid)
                except SupervisorError as e:
                    logger.warning("Could not probe PID %d of VM %s: %s", record.pid, record.name, e)
                    status.running = None
            statuses.append(status)
        return statuses
