"""
Environment composer for the workload process.

Builds the PIP_ACCEL_* settings the accelerator's test-suite reads. The
result is passed explicitly to the workload; os.environ is never touched.
"""

from pathlib import Path
from typing import Dict, Mapping, Optional

from dotenv import dotenv_values

from s3harness.service import ServiceHandle

RunEnvironment = Dict[str, str]

AUTO_INSTALL = "PIP_ACCEL_TEST_AUTO_INSTALL"
BOTO_VERBOSE = "PIP_ACCEL_BOTO_VERBOSE"
S3_URL = "PIP_ACCEL_S3_URL"
S3_CREATE_BUCKET = "PIP_ACCEL_S3_CREATE_BUCKET"
S3_BUCKET = "PIP_ACCEL_S3_BUCKET"
FAKES3_ROOT = "PIP_ACCEL_FAKES3_ROOT"
FAKES3_PID = "PIP_ACCEL_FAKES3_PID"

SERVICE_SETTINGS = (S3_URL, S3_CREATE_BUCKET, S3_BUCKET, FAKES3_ROOT, FAKES3_PID)

CI_MARKERS = ("CI", "CONTINUOUS_INTEGRATION", "TRAVIS")
TRUTHY = ("1", "true", "yes", "on")


def _flag(value: bool) -> str:
    return "true" if value else "false"


def detect_ci(environ: Mapping[str, str]) -> bool:
    """Detect a continuous integration environment."""
    return any(environ.get(name, "").strip().lower() in TRUTHY for name in CI_MARKERS)


def compose(
    handle: Optional[ServiceHandle],
    is_ci: bool,
    bucket: str,
    host: str = "localhost",
    verbose_boto: bool = False,
) -> RunEnvironment:
    """
    Derive the settings for the workload process.

    Args:
        handle: Running storage service, None if it was never started
        is_ci: Running under continuous integration
        bucket: Bucket name pinned for local runs
        host: Host name used in the S3 URL
        verbose_boto: Let boto log at full verbosity

    Returns:
        Mapping of environment variable names to values
    """
    environment = {
        # The test-suite may install system packages to test automatic
        # dependency installation
        AUTO_INSTALL: "true",
        BOTO_VERBOSE: _flag(verbose_boto),
    }

    if handle is None:
        return environment

    environment[S3_URL] = f"http://{host}:{handle.port}"
    environment[S3_CREATE_BUCKET] = "true"
    environment[FAKES3_ROOT] = str(handle.data_dir)
    environment[FAKES3_PID] = str(handle.pid)

    # CI runs are isolated, local runs share the default bucket name
    if not is_ci:
        environment[S3_BUCKET] = bucket

    return environment


def load_env_file(env_file: Optional[Path]) -> RunEnvironment:
    """
    Read extra workload settings from a dotenv file.

    Keys without a value are dropped.
    """
    if env_file is None:
        return {}
    return {key: value for key, value in dotenv_values(env_file).items() if value is not None}


def build_process_env(
    base: Mapping[str, str],
    settings: RunEnvironment,
    extra: Optional[RunEnvironment] = None,
) -> RunEnvironment:
    """
    Overlay harness settings onto a copy of the parent environment.

    Stale service settings inherited from the parent are removed when the
    harness has none of its own, so the workload sees the backend as absent.
    """
    environment = dict(base)
    environment.update(extra or {})
    for name in SERVICE_SETTINGS:
        if name not in settings:
            environment.pop(name, None)
    environment.update(settings)
    return environment
