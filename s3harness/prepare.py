"""
Preparation task: force packages into the states the test-suite expects.

Runs pip install/uninstall steps on a worker thread while the storage
service starts up. A failed step is reported but never stops the other
steps or the run; the test-suite's own assertions decide what it means.
"""

import logging
import os
import subprocess
import time
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from s3harness.config import PreparationConfig
from s3harness.utils import retry_with_backoff


@dataclass
class StepOutcome:
    """Result of one install/uninstall step."""

    action: str
    target: str
    success: bool
    returncode: Optional[int] = None
    error_message: Optional[str] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "action": self.action,
            "target": self.target,
            "success": self.success,
            "returncode": self.returncode,
            "error_message": self.error_message,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class PreparationResult:
    """Outcome of all preparation steps."""

    steps: List[StepOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(step.success for step in self.steps)

    @property
    def failures(self) -> List[StepOutcome]:
        return [step for step in self.steps if not step.success]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "success": self.success,
            "steps": [step.to_dict() for step in self.steps],
        }


class PreparationTask:
    """Install and uninstall a fixed list of packages with pip."""

    def __init__(self, config: PreparationConfig, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

    def build_command(self, action: str, target: str) -> List[str]:
        """
        Build the pip command for a step.

        Args:
            action: "install" or "uninstall"
            target: Requirement specifier or package name

        Returns:
            Argument vector
        """
        pip = [self.config.python, "-m", "pip"]
        if action == "install":
            return pip + ["install", "--quiet", target]
        if action == "uninstall":
            return pip + ["uninstall", "--yes", target]
        raise ValueError(f"Unknown preparation action: {action}")

    def start(self, executor: Executor) -> "Future[PreparationResult]":
        """Submit run() to an executor; join with future.result()."""
        return executor.submit(self.run)

    def run(self) -> PreparationResult:
        """
        Run every configured step in order.

        Returns:
            PreparationResult with one StepOutcome per step
        """
        result = PreparationResult()

        for step in self.config.steps:
            action, target = next(iter(step.items()))
            outcome = self._run_step(action, target)
            result.steps.append(outcome)

            if outcome.success:
                self.logger.info(
                    f"Prepared: pip {action} {target}",
                    extra={"stage": "prepare", "event": "step_completed", "metadata": outcome.to_dict()},
                )
            else:
                self.logger.warning(
                    f"Preparation step failed: pip {action} {target}: {outcome.error_message}",
                    extra={"stage": "prepare", "event": "step_failed", "metadata": outcome.to_dict()},
                )

        return result

    def _run_step(self, action: str, target: str) -> StepOutcome:
        command = self.build_command(action, target)
        retry_config = self.config.get_retry_config()
        start_time = time.time()

        try:
            # Only installs hit the network
            if action == "install" and retry_config["enabled"]:
                retry_with_backoff(
                    func=lambda: self._execute(command),
                    max_attempts=retry_config["max_attempts"],
                    backoff_seconds=retry_config["backoff_seconds"],
                    backoff_multiplier=retry_config["backoff_multiplier"],
                    logger=self.logger,
                )
            else:
                self._execute(command)

        except subprocess.CalledProcessError as e:
            message = f"exit code {e.returncode}"
            if e.stderr:
                message += f": {e.stderr.strip()[:500]}"
            return StepOutcome(
                action=action,
                target=target,
                success=False,
                returncode=e.returncode,
                error_message=message,
                duration_seconds=time.time() - start_time,
            )

        except OSError as e:
            return StepOutcome(
                action=action,
                target=target,
                success=False,
                error_message=str(e),
                duration_seconds=time.time() - start_time,
            )

        return StepOutcome(
            action=action,
            target=target,
            success=True,
            returncode=0,
            duration_seconds=time.time() - start_time,
        )

    def _execute(self, command: List[str]) -> subprocess.CompletedProcess:
        """
        Run a pip command.

        Raises:
            subprocess.CalledProcessError: If command fails
        """
        self.logger.debug(f"Executing: {' '.join(command)}")

        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            check=False,
            env=dict(os.environ, PIP_DISABLE_PIP_VERSION_CHECK="1"),
        )

        if result.returncode != 0:
            raise subprocess.CalledProcessError(
                result.returncode, command, output=result.stdout, stderr=result.stderr
            )

        return result
