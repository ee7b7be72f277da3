"""
Process liveness and termination.

The service controller only needs two things from the operating system:
a liveness probe and a forceful kill. Both are behind ProcessControl so
tests can simulate races without spawning real processes.
"""

import os
import signal
from typing import Protocol, runtime_checkable


@runtime_checkable
class ProcessControl(Protocol):
    """Protocol for probing and killing processes by pid."""

    def is_alive(self, pid: int) -> bool:
        """Return True if a process with this pid exists."""
        ...

    def terminate(self, pid: int) -> None:
        """
        Forcefully terminate a process.

        Must be a no-op when the process has already exited.
        """
        ...


class OsProcessControl:
    """ProcessControl backed by os.kill()."""

    def is_alive(self, pid: int) -> bool:
        """Signal-zero probe."""
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists, but owned by someone else
            return True
        return True

    def terminate(self, pid: int) -> None:
        """Send SIGKILL; the storage service has nothing worth flushing."""
        if pid <= 0:
            return
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
