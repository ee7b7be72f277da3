"""
Run coordinator for s3harness.

Sequences one harness run:
    IDLE → SERVICE_STARTING → AWAITING_READINESS → PREPARATION_JOIN
         → WORKLOAD_RUNNING → TEARING_DOWN → DONE

Preparation runs on a worker thread while the storage service starts on
the calling thread. The two are joined separately: readiness is waited
for with a deadline, preparation is always waited for before the
workload starts. Teardown runs on every exit path once the service phase
was entered.
"""

import logging
import os
import subprocess
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from s3harness.config import HarnessConfig
from s3harness.environment import build_process_env, compose, detect_ci, load_env_file
from s3harness.errors import SetupError, WorkloadLaunchError
from s3harness.prepare import PreparationResult, PreparationTask
from s3harness.service import Readiness, ServiceController, ServiceHandle
from s3harness.utils import (
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
)

# Distinct from anything a test runner normally exits with
SETUP_FAILED_EXIT_CODE = 125


class RunState(str, Enum):
    """Phases of a harness run."""

    IDLE = "idle"
    SERVICE_STARTING = "service_starting"
    AWAITING_READINESS = "awaiting_readiness"
    PREPARATION_JOIN = "preparation_join"
    WORKLOAD_RUNNING = "workload_running"
    TEARING_DOWN = "tearing_down"
    DONE = "done"


@dataclass
class RunResult:
    """Result of a complete harness run."""

    exit_code: int
    started_at: datetime
    ended_at: datetime
    duration_seconds: float
    states: List[RunState] = field(default_factory=list)
    readiness: Optional[Readiness] = None
    service_started: bool = False
    preparation: Optional[PreparationResult] = None
    workload_command: List[str] = field(default_factory=list)
    workload_delay_seconds: Optional[float] = None
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "exit_code": self.exit_code,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "states": [state.value for state in self.states],
            "readiness": self.readiness.value if self.readiness else None,
            "service_started": self.service_started,
            "preparation": self.preparation.to_dict() if self.preparation else None,
            "workload_command": self.workload_command,
            "workload_delay_seconds": self.workload_delay_seconds,
            "error_message": self.error_message,
        }


class RunCoordinator:
    """
    Main harness orchestrator.

    Owns the ordering of service start, preparation, workload and
    teardown. The workload exit code is the run's exit code.
    """

    def __init__(
        self,
        config: HarnessConfig,
        service: Optional[ServiceController] = None,
        preparation: Optional[PreparationTask] = None,
        environ: Optional[Mapping[str, str]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize coordinator.

        Args:
            config: Harness configuration
            service: Service controller (default: built from config.service)
            preparation: Preparation task (default: built from config.preparation)
            environ: Parent environment for the workload (default: os.environ)
            logger: Logger instance
        """
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.service = service or ServiceController(config.service)
        self.preparation = preparation or PreparationTask(config.preparation)
        self.environ = dict(os.environ if environ is None else environ)
        self.states: List[RunState] = []

    def run(
        self,
        command: Optional[Sequence[str]] = None,
        use_service: bool = True,
        prepare: bool = True,
        timeout: Optional[float] = None,
    ) -> RunResult:
        """
        Run the workload under a controlled environment.

        Args:
            command: Workload argument vector (default: workload.command)
            use_service: Start the storage service if it is installed
            prepare: Run the preparation task
            timeout: Readiness deadline in seconds (default: service.ready_timeout)

        Returns:
            RunResult with the workload exit code, or SETUP_FAILED_EXIT_CODE
            when setup failed before the workload was launched
        """
        started_at = datetime.now(timezone.utc)
        start_time = time.monotonic()
        self.states = []
        self._enter(RunState.IDLE)

        workload_command = list(command) if command else self.config.workload.get_command()
        handle: Optional[ServiceHandle] = None
        readiness: Optional[Readiness] = None
        preparation: Optional[PreparationResult] = None
        workload_delay: Optional[float] = None
        error_message: Optional[str] = None
        exit_code = SETUP_FAILED_EXIT_CODE
        service_entered = False
        preparation_joined = False
        future: "Optional[Future[PreparationResult]]" = None

        print_banner("s3harness")

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="s3harness-prepare")
        try:
            if prepare and self.config.preparation.enabled:
                print_info(f"Preparing {len(self.config.preparation.steps)} packages in the background...")
                future = self.preparation.start(executor)

            if use_service and self.config.service.enabled and self.service.is_available():
                self._enter(RunState.SERVICE_STARTING)
                service_entered = True
                handle = self.service.start()

                self._enter(RunState.AWAITING_READINESS)
                readiness = self.service.await_ready(timeout)
                if readiness is Readiness.READY:
                    print_success(f"Storage service ready at {self.config.service.base_url}")
                else:
                    print_warning("Storage service did not become reachable, S3 tests will see a degraded backend")
            elif use_service and self.config.service.enabled:
                print_warning(f"{self.service.executable} not found, skipping the S3 cache backend tests")

            self._enter(RunState.PREPARATION_JOIN)
            preparation_joined = True
            preparation = self._join_preparation(future)

            settings = compose(
                handle,
                is_ci=detect_ci(self.environ),
                bucket=self.config.service.bucket,
                host=self.config.service.host,
                verbose_boto=self.config.workload.verbose_boto,
            )
            process_env = build_process_env(
                self.environ, settings, load_env_file(self.config.workload.env_file)
            )

            self._enter(RunState.WORKLOAD_RUNNING)
            workload_delay = time.monotonic() - start_time
            exit_code = self._run_workload(workload_command, process_env)

        except SetupError as e:
            error_message = str(e)
            print_error(f"Setup failed: {e}")
            self.logger.error(
                f"Setup failed, workload not started: {e}",
                extra={"event": "setup_failed", "metadata": {"error": str(e)}},
            )

        finally:
            if service_entered:
                self._enter(RunState.TEARING_DOWN)
                self.service.teardown()
            executor.shutdown(wait=True)
            if future is not None and not preparation_joined:
                preparation = self._drain_preparation(future)

        self._enter(RunState.DONE)
        duration = time.monotonic() - start_time

        if exit_code == 0:
            print_success(f"Workload passed in {format_duration(duration)}")
        elif error_message is None:
            print_error(f"Workload failed with exit code {exit_code} after {format_duration(duration)}")

        return RunResult(
            exit_code=exit_code,
            started_at=started_at,
            ended_at=datetime.now(timezone.utc),
            duration_seconds=duration,
            states=list(self.states),
            readiness=readiness,
            service_started=handle is not None,
            preparation=preparation,
            workload_command=workload_command,
            workload_delay_seconds=workload_delay,
            error_message=error_message,
        )

    def _enter(self, state: RunState) -> None:
        self.states.append(state)
        self.logger.debug(f"Entering state {state.value}", extra={"event": "state_changed", "stage": state.value})

    def _join_preparation(self, future: "Optional[Future[PreparationResult]]") -> Optional[PreparationResult]:
        """
        Wait for the preparation task.

        Failed steps are advisory. An exception inside the task itself is
        re-raised here as a SetupError.
        """
        if future is None:
            return None

        try:
            result = future.result()
        except Exception as e:
            raise SetupError(f"Preparation task crashed: {e}") from e

        if result.success:
            print_success(f"Prepared {len(result.steps)} packages")
        else:
            for failure in result.failures:
                print_warning(f"pip {failure.action} {failure.target} failed: {failure.error_message}")

        return result

    def _drain_preparation(self, future: "Future[PreparationResult]") -> Optional[PreparationResult]:
        """Report the outcome of a preparation task the run never joined."""
        error = future.exception()
        if error is not None:
            self.logger.warning(
                f"Preparation task crashed: {error}",
                extra={"event": "preparation_crashed", "metadata": {"error": str(error)}},
            )
            return None

        result = future.result()
        for failure in result.failures:
            self.logger.warning(
                f"pip {failure.action} {failure.target} failed: {failure.error_message}",
                extra={"event": "preparation_step_failed", "metadata": failure.to_dict()},
            )
        return result

    def _run_workload(self, command: List[str], env: Mapping[str, str]) -> int:
        """
        Run the workload in the foreground.

        Raises:
            WorkloadLaunchError: If the command cannot be spawned
        """
        print_info(f"Running: {' '.join(command)}")
        self.logger.info(
            f"Starting workload: {' '.join(command)}",
            extra={"event": "workload_started", "metadata": {"command": command}},
        )

        try:
            completed = subprocess.run(command, env=dict(env), check=False)
        except OSError as e:
            raise WorkloadLaunchError(f"Could not run {command[0]}: {e}") from e

        self.logger.info(
            f"Workload exited with code {completed.returncode}",
            extra={"event": "workload_finished", "metadata": {"exit_code": completed.returncode}},
        )
        return completed.returncode
