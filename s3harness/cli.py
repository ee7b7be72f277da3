"""
CLI interface for s3harness.

Provides commands: run, status, clean, validate.
"""

from pathlib import Path

import click

from s3harness import __version__
from s3harness.config import load_config
from s3harness.coordinator import SETUP_FAILED_EXIT_CODE, RunCoordinator
from s3harness.errors import ConfigError
from s3harness.service import ServiceController
from s3harness.utils import (
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)

INTERRUPTED_EXIT_CODE = 130


def _exit_status(returncode: int) -> int:
    """Map a subprocess return code to a shell exit status."""
    if returncode < 0:
        # Killed by a signal
        return 128 - returncode
    return returncode


def _load(config_path):
    try:
        config = load_config(config_path)
        config.validate()
    except ConfigError as e:
        print_error(f"Configuration invalid: {e}")
        raise SystemExit(SETUP_FAILED_EXIT_CODE)
    return config


@click.group()
@click.version_option(version=__version__, prog_name="s3harness")
def main():
    """
    s3harness - Test harness for the pip accelerator.

    Runs the test-suite against an ephemeral FakeS3 server.
    """
    pass


config_option = click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Custom configuration file (default: config/harness.yaml)",
)


@main.command(context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False})
@config_option
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    help="Seconds to wait for the storage service (default: service.ready_timeout)",
)
@click.option("--no-service", is_flag=True, help="Do not start the storage service")
@click.option("--skip-prepare", is_flag=True, help="Do not run the package preparation steps")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.argument("command", nargs=-1, type=click.UNPROCESSED)
def run(config, timeout, no_service, skip_prepare, verbose, command):
    """
    Run the workload with the storage service up.

    Without COMMAND the configured default workload runs. The exit status
    is the workload's exit status.

    Examples:

      # Run the default test-suite
      s3harness run

      # Run a single test module
      s3harness run -- python -m pytest tests/test_s3.py -x

      # Skip the preparation steps
      s3harness run --skip-prepare
    """
    harness_config = _load(config)

    setup_logging(
        harness_config.get_log_file_path(),
        "DEBUG" if verbose else harness_config.get_log_level(),
        harness_config.get_log_format(),
        harness_config.should_log_to_console(),
    )

    coordinator = RunCoordinator(harness_config)

    try:
        result = coordinator.run(
            command=list(command) or None,
            use_service=not no_service,
            prepare=not skip_prepare,
            timeout=timeout,
        )
    except KeyboardInterrupt:
        print_warning("Interrupted")
        raise SystemExit(INTERRUPTED_EXIT_CODE)

    raise SystemExit(_exit_status(result.exit_code))


@main.command()
@config_option
def status(config):
    """
    Show storage service availability and left-over state.

    Examples:

      s3harness status
    """
    harness_config = _load(config)
    controller = ServiceController(harness_config.service)
    paths = controller.paths

    if controller.is_available():
        print_success(f"Storage service executable: {controller.executable}")
    else:
        print_warning(f"Storage service executable not found: {controller.executable}")

    print_info(f"State root: {paths.root}")

    if not controller.has_stale_state():
        print_info("No left-over storage service state")
        return

    pid = controller.read_pid()
    if pid is not None:
        state = "is still running" if controller.process_control.is_alive(pid) else "is not running"
        print_warning(f"Left-over pid {pid} {state} ({paths.pid_file})")
    if paths.data_dir.exists():
        print_warning(f"Data directory exists: {paths.data_dir}")
    print_info("Run 's3harness clean' to remove it")


@main.command()
@config_option
def clean(config):
    """
    Kill a left-over storage service and remove its state.

    Examples:

      s3harness clean
    """
    harness_config = _load(config)
    controller = ServiceController(harness_config.service)

    if controller.teardown():
        print_success(f"Removed storage service state in {controller.paths.root}")
    else:
        print_info("Nothing to clean")


@main.command()
@config_option
def validate(config):
    """
    Validate harness configuration.

    Examples:

      s3harness validate --config config/harness.yaml
    """
    harness_config = _load(config)
    print_success(f"Configuration valid ({harness_config.config_path or 'built-in defaults'})")
    print_info(f"Service: {' '.join(harness_config.service.build_command(harness_config.service.paths.data_dir))}")
    print_info(f"Workload: {' '.join(harness_config.workload.get_command())}")
    print_info(f"Preparation steps: {len(harness_config.preparation.steps)}")


if __name__ == "__main__":
    main()
