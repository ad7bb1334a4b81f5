"""Process supervisor for emulator child processes.

ProcessSupervisor is the only place that touches the OS process table. The VM
manager receives one as a dependency, so tests can substitute a double that
simulates process lifecycles.

The supervisor keeps no in-memory state: a VM's pid lives in its metadata
record and every call takes the pid as an argument.
"""
from __future__ import annotations

import os
import signal
import subprocess
from abc import ABC, abstractmethod
from typing import List, Sequence

from . import logging_config
from .errors import SupervisorError, ToolError

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_SUPERVISOR)


class ProcessSupervisor(ABC):
    """Abstract interface for spawning, probing and terminating processes."""

    @abstractmethod
    def spawn(self, args: Sequence[str]) -> int:
        """Launch the emulator with ``args`` detached and return its pid.

        Raises ToolError if the process cannot be launched.
        """

    @abstractmethod
    def is_alive(self, pid: int) -> bool:
        """Return False iff no process with ``pid`` exists.

        Raises SupervisorError on any other lookup failure.
        """

    @abstractmethod
    def terminate(self, pid: int) -> bool:
        """Send a termination signal to ``pid``.

        Returns True if the process was signaled and False if it was already
        gone. Raises SupervisorError on any other failure.
        """


class LocalSupervisor(ProcessSupervisor):
    """Supervisor backed by ``subprocess`` and ``os.kill`` on the local host."""

    def __init__(self, binary: str = "qemu-system-x86_64", term_signal: int = signal.SIGTERM):
        self.binary = binary
        self.term_signal = term_signal

    def command(self, args: Sequence[str]) -> List[str]:
        return [self.binary, *[str(a) for a in args]]

    def spawn(self, args: Sequence[str]) -> int:
        cmd = self.command(args)
        logger.debug("Spawning: %s", " ".join(cmd))
        try:
            # own session so the emulator outlives this process and its signals
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                close_fds=True,
                start_new_session=True,
            )
        except FileNotFoundError:
            raise ToolError(f"{self.binary} not found; cannot start emulator")
        except OSError as e:
            raise ToolError(f"Failed to start {self.binary}: {e}")
        logger.info("Spawned %s (PID: %d)", self.binary, proc.pid)
        return proc.pid

    @staticmethod
    def _reap(pid: int) -> None:
        """Collect ``pid`` if it is an exited child of this process."""
        try:
            os.waitpid(pid, os.WNOHANG)
        except ChildProcessError:
            pass

    def is_alive(self, pid: int) -> bool:
        pid = _checked_pid(pid)
        self._reap(pid)
        try:
            # Signal 0 doesn't kill, just checks existence
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except OSError as e:
            raise SupervisorError(f"Failed to probe process {pid}: {e}")
        return True

    def terminate(self, pid: int) -> bool:
        pid = _checked_pid(pid)
        try:
            os.kill(pid, self.term_signal)
        except ProcessLookupError:
            logger.info("Process %d already stopped", pid)
            return False
        except OSError as e:
            raise SupervisorError(f"Failed to stop process {pid}: {e}")
        logger.info("Sent signal %d to process %d", int(self.term_signal), pid)
        self._reap(pid)
        return True


def _checked_pid(pid) -> int:
    # pid 0 and negatives address process groups, never a single VM
    if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
        raise SupervisorError(f"Invalid pid: {pid!r}")
    return pid
