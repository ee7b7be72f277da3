"""
Service controller for the ephemeral FakeS3 server.

Starts the server in the background against a fresh data directory,
polls its port until it accepts connections, and removes every trace of
it again (process, pid file, data directory) during teardown.
"""

import logging
import os
import shutil
import socket
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from s3harness.config import ServiceConfig
from s3harness.errors import ServiceStartError
from s3harness.process import OsProcessControl, ProcessControl
from s3harness.utils import remove_tree

# How long to wait for the kernel to reap a killed child
REAP_TIMEOUT = 5.0


class Readiness(str, Enum):
    """Outcome of polling the service port."""

    READY = "ready"
    TIMED_OUT = "timed_out"


@dataclass
class ServiceHandle:
    """A running storage service owned by the controller."""

    pid: int
    data_dir: Path
    port: int
    pid_file: Path
    process: Optional[subprocess.Popen] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict:
        """Convert to dictionary for logging."""
        return {
            "pid": self.pid,
            "data_dir": str(self.data_dir),
            "port": self.port,
            "pid_file": str(self.pid_file),
        }


class ServiceController:
    """
    Lifecycle of one ephemeral storage service.

    start() always tears down left-over state first, so a crashed run can
    never leak cached objects into the next one.
    """

    def __init__(
        self,
        config: ServiceConfig,
        process_control: Optional[ProcessControl] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize service controller.

        Args:
            config: Service configuration
            process_control: Liveness/kill implementation (default: os.kill)
            logger: Logger instance
        """
        self.config = config
        self.paths = config.paths
        self.process_control = process_control or OsProcessControl()
        self.logger = logger or logging.getLogger(__name__)
        self.handle: Optional[ServiceHandle] = None

    @property
    def executable(self) -> str:
        return self.config.build_command(self.paths.data_dir)[0]

    def is_available(self) -> bool:
        """Check whether the service executable can be found."""
        executable = self.executable
        if os.sep in executable:
            return os.path.isfile(executable) and os.access(executable, os.X_OK)
        return shutil.which(executable) is not None

    def has_stale_state(self) -> bool:
        """Check for a pid file or data directory left behind."""
        return self.paths.pid_file.exists() or self.paths.data_dir.exists()

    def start(self) -> ServiceHandle:
        """
        Launch the service against a fresh, empty data directory.

        Returns:
            ServiceHandle for the new process

        Raises:
            ServiceStartError: If stale state cannot be removed, or the data
                directory or the process cannot be created
        """
        if self.has_stale_state():
            self.logger.info(
                f"Cleaning up storage service state from a previous run in {self.paths.root}",
                extra={"stage": "service", "event": "stale_state_found"},
            )
            self.teardown()
            if self.has_stale_state():
                raise ServiceStartError(f"Could not remove stale state in {self.paths.root}")

        try:
            self.paths.root.mkdir(parents=True, exist_ok=True)
            self.paths.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ServiceStartError(f"Could not create {self.paths.data_dir}: {e}") from e

        command = self.config.build_command(self.paths.data_dir)
        self.logger.debug(f"Executing: {' '.join(command)}")

        try:
            with open(self.paths.log_file, "wb") as log:
                process = subprocess.Popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            self.teardown()
            raise ServiceStartError(f"Could not start {command[0]}: {e}") from e

        self.handle = ServiceHandle(
            pid=process.pid,
            data_dir=self.paths.data_dir,
            port=self.config.port,
            pid_file=self.paths.pid_file,
            process=process,
        )

        try:
            self.paths.pid_file.write_text(f"{process.pid}\n")
        except OSError as e:
            self.teardown()
            raise ServiceStartError(f"Could not write pid file {self.paths.pid_file}: {e}") from e

        self.logger.info(
            f"Started {command[0]} (pid {process.pid}) on port {self.config.port}",
            extra={
                "stage": "service",
                "event": "service_started",
                "metadata": self.handle.to_dict(),
            },
        )

        return self.handle

    def await_ready(self, timeout: Optional[float] = None) -> Readiness:
        """
        Poll the service port until it accepts a connection.

        Refused connections only mean "not yet". The deadline is hard: every
        connect attempt and every sleep is clamped to the time left.

        Args:
            timeout: Seconds to wait (default: service.ready_timeout)

        Returns:
            Readiness.READY or Readiness.TIMED_OUT

        Raises:
            ServiceStartError: If the launched process exited before it
                became reachable
        """
        timeout = self.config.ready_timeout if timeout is None else timeout
        interval = self.config.poll_interval
        started = time.monotonic()
        deadline = started + timeout
        attempt = 0

        while True:
            attempt_started = time.monotonic()
            remaining = deadline - attempt_started
            if remaining <= 0:
                break

            attempt += 1
            if self._port_open(min(interval, remaining)):
                self.logger.info(
                    f"Storage service is accepting connections on port {self.config.port}",
                    extra={
                        "stage": "service",
                        "event": "service_ready",
                        "metadata": {"attempts": attempt, "waited_seconds": time.monotonic() - started},
                    },
                )
                return Readiness.READY

            self._check_running()

            now = time.monotonic()
            if now >= deadline:
                break

            self.logger.info(
                f"Waiting for storage service on port {self.config.port} "
                f"({int(now - started)}s of {int(timeout)}s)...",
                extra={"stage": "service", "event": "service_waiting"},
            )
            time.sleep(max(0.0, min(attempt_started + interval, deadline) - now))

        self.logger.warning(
            f"Storage service did not become reachable within {timeout}s",
            extra={
                "stage": "service",
                "event": "service_timeout",
                "metadata": {"attempts": attempt, "timeout": timeout},
            },
        )
        return Readiness.TIMED_OUT

    def teardown(self) -> bool:
        """
        Kill the service and remove its pid file and data directory.

        Safe to call any number of times, and safe when the process is
        already gone (including killed by the workload itself).

        Returns:
            True if there was anything to clean up
        """
        process = self.handle.process if self.handle else None
        pid = self.read_pid()
        if pid is None and self.handle is not None:
            pid = self.handle.pid

        if pid is None and not self.has_stale_state():
            self.handle = None
            return False

        if pid is not None:
            self._kill(pid, process)
        if process is not None and process.pid != pid:
            # pid file was rewritten under us, still stop our own child
            self._kill(process.pid, process)

        try:
            self.paths.pid_file.unlink(missing_ok=True)
        except OSError as e:
            self._cleanup_failed(e)

        try:
            if remove_tree(self.paths.data_dir):
                self.logger.debug(f"Removed {self.paths.data_dir}")
        except OSError as e:
            self._cleanup_failed(e)

        self.handle = None
        return True

    def _cleanup_failed(self, error: OSError) -> None:
        self.logger.warning(
            f"Storage service cleanup incomplete: {error}",
            extra={"stage": "service", "event": "teardown_failed", "metadata": {"error": str(error)}},
        )

    def _kill(self, pid: int, process: Optional[subprocess.Popen]) -> None:
        """Forcefully stop pid, tolerating a process that already exited."""
        try:
            if self.process_control.is_alive(pid):
                self.logger.info(
                    f"Killing storage service (pid {pid})",
                    extra={"stage": "service", "event": "service_killed", "metadata": {"pid": pid}},
                )
                self.process_control.terminate(pid)
            else:
                self.logger.debug(f"Storage service (pid {pid}) already exited")
        except OSError as e:
            self.logger.warning(f"Could not kill storage service (pid {pid}): {e}")

        # Our own child stays a zombie until it is waited for
        if process is not None and process.pid == pid:
            try:
                process.wait(timeout=REAP_TIMEOUT)
            except subprocess.TimeoutExpired:
                self.logger.warning(f"Storage service (pid {pid}) did not exit after SIGKILL")

    def read_pid(self) -> Optional[int]:
        """Read the recorded pid, None when missing or unreadable."""
        try:
            content = self.paths.pid_file.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            self.logger.warning(f"Could not read {self.paths.pid_file}: {e}")
            return None

        try:
            return int(content)
        except ValueError:
            self.logger.warning(f"Ignoring corrupt pid file {self.paths.pid_file}: {content!r}")
            return None

    def _port_open(self, timeout: float) -> bool:
        try:
            with socket.create_connection((self.config.host, self.config.port), timeout=timeout):
                return True
        except OSError:
            return False

    def _check_running(self) -> None:
        """Raise if our own process died while we were waiting for it."""
        if self.handle is None or self.handle.process is None:
            return

        returncode = self.handle.process.poll()
        if returncode is not None:
            raise ServiceStartError(
                f"Storage service exited with code {returncode} before accepting "
                f"connections (see {self.paths.log_file})"
            )
