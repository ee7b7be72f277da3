"""
Configuration management for s3harness.

Loads and validates the harness.yaml configuration file. Every section is
optional; missing keys fall back to the defaults below, which reproduce
the accelerator's own test setup (FakeS3 on port 12345).
"""

import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from s3harness.errors import ConfigError
from s3harness.paths import StatePaths

DEFAULT_CONFIG_PATH = Path("config/harness.yaml")

DEFAULT_SERVICE_COMMAND = ["fakes3", "--root={data_dir}", "--port={port}"]
DEFAULT_PORT = 12345
DEFAULT_READY_TIMEOUT = 30.0
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_BUCKET = "pip-accel-test-bucket"

# {python} is the interpreter running the harness
DEFAULT_WORKLOAD_COMMAND = ["{python}", "-m", "pytest"]

# Package states the accelerator's test-suite relies on: one package pinned
# below its latest release, one absent and one pinned to a newer release.
DEFAULT_PREPARATION_STEPS = [
    {"install": "pep8==1.5.7"},
    {"uninstall": "pyflakes"},
    {"install": "wheel==0.38.4"},
]

STEP_ACTIONS = ("install", "uninstall")

ENV_STATE_ROOT = "S3HARNESS_STATE_ROOT"
ENV_READY_TIMEOUT = "S3HARNESS_READY_TIMEOUT"


def _as_command(value: Any, what: str) -> List[str]:
    if isinstance(value, str):
        value = value.split()
    if not isinstance(value, list) or not value or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{what} must be a non-empty list of strings, got {value!r}")
    return list(value)


class ServiceConfig:
    """Configuration for the ephemeral storage service."""

    def __init__(self, data: Dict[str, Any]):
        self.enabled = data.get("enabled", True)
        self.command = data.get("command", DEFAULT_SERVICE_COMMAND)
        self.host = data.get("host", "localhost")
        self.port = data.get("port", DEFAULT_PORT)
        self.state_root = data.get("state_root")
        self.ready_timeout = data.get("ready_timeout", DEFAULT_READY_TIMEOUT)
        self.poll_interval = data.get("poll_interval", DEFAULT_POLL_INTERVAL)
        self.bucket = data.get("bucket", DEFAULT_BUCKET)

    @property
    def paths(self) -> StatePaths:
        """Pid file and data directory locations."""
        return StatePaths.from_root(self.state_root)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def build_command(self, data_dir: Path) -> List[str]:
        """Expand {data_dir}, {port} and {host} in the service command."""
        values = {"data_dir": str(data_dir), "port": self.port, "host": self.host}
        return [arg.format(**values) for arg in _as_command(self.command, "service.command")]

    def validate(self) -> None:
        """Validate service configuration."""
        _as_command(self.command, "service.command")

        if not isinstance(self.port, int) or not 0 < self.port < 65536:
            raise ConfigError(f"service.port must be an integer between 1 and 65535, got {self.port!r}")

        if not isinstance(self.ready_timeout, (int, float)) or self.ready_timeout <= 0:
            raise ConfigError(f"service.ready_timeout must be a positive number, got {self.ready_timeout!r}")

        if not isinstance(self.poll_interval, (int, float)) or self.poll_interval <= 0:
            raise ConfigError(f"service.poll_interval must be a positive number, got {self.poll_interval!r}")

        if not self.bucket:
            raise ConfigError("service.bucket must not be empty")

    def __repr__(self) -> str:
        return f"ServiceConfig(command={self.command[0] if self.command else None}, port={self.port})"


class PreparationConfig:
    """Configuration for the package preparation task."""

    def __init__(self, data: Dict[str, Any]):
        self.enabled = data.get("enabled", True)
        self.python = data.get("python", sys.executable)
        self.steps = data.get("steps", DEFAULT_PREPARATION_STEPS)
        self.retry = data.get("retry", {})

    def get_retry_config(self) -> Dict[str, Any]:
        """Get retry configuration for install steps."""
        return {
            "enabled": self.retry.get("enabled", True),
            "max_attempts": self.retry.get("max_attempts", 3),
            "backoff_seconds": self.retry.get("backoff_seconds", 5),
            "backoff_multiplier": self.retry.get("backoff_multiplier", 2.0),
        }

    def validate(self) -> None:
        """Validate preparation steps."""
        if not isinstance(self.steps, list):
            raise ConfigError("preparation.steps must be a list")

        for index, step in enumerate(self.steps):
            if not isinstance(step, dict) or len(step) != 1:
                raise ConfigError(
                    f"preparation.steps[{index}] must have exactly one of {', '.join(STEP_ACTIONS)}"
                )
            action, target = next(iter(step.items()))
            if action not in STEP_ACTIONS:
                raise ConfigError(f"preparation.steps[{index}]: unknown action '{action}'")
            if not isinstance(target, str) or not target.strip():
                raise ConfigError(f"preparation.steps[{index}]: '{action}' needs a package")

    def __repr__(self) -> str:
        return f"PreparationConfig(enabled={self.enabled}, steps={len(self.steps)})"


class WorkloadConfig:
    """Configuration for the default workload invocation."""

    def __init__(self, data: Dict[str, Any]):
        self.command = data.get("command", DEFAULT_WORKLOAD_COMMAND)
        env_file = data.get("env_file")
        self.env_file = Path(env_file).expanduser() if env_file else None
        self.verbose_boto = data.get("verbose_boto", False)

    def get_command(self) -> List[str]:
        """Workload argv with {python} expanded to the running interpreter."""
        command = _as_command(self.command, "workload.command")
        return [part.replace("{python}", sys.executable) for part in command]

    def validate(self) -> None:
        """Validate workload configuration."""
        self.get_command()

        if self.env_file is not None and not self.env_file.exists():
            raise ConfigError(f"workload.env_file does not exist: {self.env_file}")

    def __repr__(self) -> str:
        return f"WorkloadConfig(command={self.command!r})"


class HarnessConfig:
    """Complete harness configuration."""

    def __init__(self, data: Optional[Dict[str, Any]] = None, config_path: Optional[Path] = None):
        self.config_path = config_path
        self.raw_config = data or {}

        self.service = ServiceConfig(self.raw_config.get("service") or {})
        self.preparation = PreparationConfig(self.raw_config.get("preparation") or {})
        self.workload = WorkloadConfig(self.raw_config.get("workload") or {})
        self.logging = self.raw_config.get("logging") or {}

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path, None when file logging is off."""
        output = self.logging.get("output")
        return Path(output).expanduser() if output else None

    def get_log_level(self) -> str:
        """Get logging level."""
        return self.logging.get("level", "INFO").upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "pretty")

    def should_log_to_console(self) -> bool:
        """Check if console logging is enabled."""
        return self.logging.get("console", True)

    def apply_env_overrides(self, environ: Mapping[str, str]) -> None:
        """Apply S3HARNESS_* overrides from an environment mapping."""
        if environ.get(ENV_STATE_ROOT):
            self.service.state_root = environ[ENV_STATE_ROOT]

        if environ.get(ENV_READY_TIMEOUT):
            try:
                self.service.ready_timeout = float(environ[ENV_READY_TIMEOUT])
            except ValueError:
                raise ConfigError(
                    f"{ENV_READY_TIMEOUT} must be a number, got {environ[ENV_READY_TIMEOUT]!r}"
                )

    def validate(self) -> None:
        """Validate entire configuration."""
        self.service.validate()
        self.preparation.validate()
        self.workload.validate()

        if self.get_log_format() not in ("structured", "pretty"):
            raise ConfigError(f"logging.format must be 'structured' or 'pretty', got {self.get_log_format()!r}")

    def __repr__(self) -> str:
        return f"HarnessConfig(path={self.config_path}, service={self.service!r})"


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    """Load and parse YAML configuration file."""
    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigError(f"Configuration file {config_path} must contain a mapping")
    return config


def load_config(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> HarnessConfig:
    """
    Load harness configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to config/harness.yaml,
            and to built-in defaults when that file does not exist.
        environ: Environment used for S3HARNESS_* overrides (default os.environ)

    Returns:
        HarnessConfig instance

    Raises:
        ConfigError: If config is invalid, or an explicit path is missing
    """
    if config_path is None:
        data = _load_yaml(DEFAULT_CONFIG_PATH) if DEFAULT_CONFIG_PATH.exists() else {}
        config = HarnessConfig(data, DEFAULT_CONFIG_PATH if data else None)
    else:
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")
        config = HarnessConfig(_load_yaml(config_path), config_path)

    config.apply_env_overrides(os.environ if environ is None else environ)
    return config
