"""OBSERVER service for coherence checks between VM records and the host.

The observer runs periodic checks (interval ≤5s) to detect inconsistencies:
- VM records whose stored pid no longer refers to a live process.
- VM records whose backing disk image has disappeared.
- Logs mismatches without automatic correction; stale pids are reconciled
  lazily by the next start, stop or delete of that VM.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import List, Optional

from . import logging_config
from .disks import DiskManager
from .errors import SupervisorError
from .metadata_store import MetadataStore
from .supervisor import ProcessSupervisor

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_OBSERVER)


@dataclass
class CoherenceIssue:
    """Represents a detected data coherence problem."""
    issue_type: str  # "stale_pid", "missing_disk", "probe_failed"
    resource_id: str
    details: str


class LocalObserver:
    """Background thread that periodically checks every VM record."""

    def __init__(self, store: MetadataStore, supervisor: ProcessSupervisor,
                 disks: Optional[DiskManager] = None, check_interval: float = 5.0):
        self.store = store
        self.supervisor = supervisor
        self.disks = disks
        # the loop sleeps in 0.1s slices; anything shorter would never sleep
        self.check_interval = min(max(float(check_interval), 0.1), 5.0)
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self.last_issues: List[CoherenceIssue] = []

    def check_coherence(self) -> List[CoherenceIssue]:
        """Run all coherence checks and return issues."""
        issues = []
        for record in self.store.list():
            if record.pid:
                try:
                    if not self.supervisor.is_alive(record.pid):
                        issues.append(CoherenceIssue(
                            issue_type="stale_pid",
                            resource_id=record.name,
                            details=f"Record has PID {record.pid} but the process is not running"
                        ))
                except SupervisorError as e:
                    issues.append(CoherenceIssue(
                        issue_type="probe_failed",
                        resource_id=record.name,
                        details=str(e)
                    ))
            if self.disks is not None and not self.disks.exists(record.disk_name, record.format):
                issues.append(CoherenceIssue(
                    issue_type="missing_disk",
                    resource_id=record.name,
                    details=f"Disk {record.disk_name}.{record.format} not found"
                ))

        self.last_issues = issues
        return issues

    def _observer_loop(self) -> None:
        """Background thread loop for periodic coherence checks."""
        logger.info("Observer loop starting (check_interval=%.1fs)", self.check_interval)
        while self.running:
            try:
                issues = self.check_coherence()
                if issues:
                    logger.warning("Coherence check found %d issue(s)", len(issues))
                    for issue in issues:
                        logging_config.UnifiedLogger.log_coherence_issue(
                            logger, issue.issue_type, issue.resource_id, issue.details
                        )
                else:
                    logger.debug("Coherence check passed")
            except Exception as e:
                logger.error("Error in observer loop: %s", e)

            # Sleep for the check interval, but allow for quick stop.
            for _ in range(int(self.check_interval * 10)):
                if not self.running:
                    break
                time.sleep(0.1)

    def start(self) -> None:
        """Start the observer background thread."""
        if self.running:
            logger.warning("Observer already running")
            return

        self.running = True
        self.thread = threading.Thread(target=self._observer_loop, daemon=True)
        self.thread.start()
        logger.info("Observer started")

    def stop(self) -> None:
        """Stop the observer background thread."""
        if not self.running:
            logger.warning("Observer not running")
            return

        self.running = False
        if self.thread:
            self.thread.join(timeout=5.0)
            logger.info("Observer stopped")
