"""
Error classes for s3harness.

Only setup problems are exceptions. Everything else a run can go through
is a value:
- Readiness timeout: Readiness.TIMED_OUT, the workload decides what it means
- Preparation step failure: recorded in PreparationResult
- Workload failure: its exit code becomes the harness exit code
- Teardown races: swallowed by the service controller
"""


class HarnessError(Exception):
    """Base exception for s3harness."""
    pass


class ConfigError(HarnessError):
    """Configuration validation error."""
    pass


class SetupError(HarnessError):
    """
    Setup failed before the workload could be launched.

    The coordinator aborts the run with SETUP_FAILED_EXIT_CODE but still
    tears down whatever state the service controller created.
    """
    pass


class ServiceStartError(SetupError):
    """
    The storage service binary exists but could not be started.

    Examples:
    - Executable could not be spawned (permissions, bad interpreter)
    - Process exited before its port became reachable (port in use)
    """
    pass


class WorkloadLaunchError(SetupError):
    """The workload command could not be spawned."""
    pass
