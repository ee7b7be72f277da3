"""Tests for the s3harness CLI."""

import subprocess
import sys

import pytest
import yaml
from click.testing import CliRunner

from s3harness import __version__
from s3harness.cli import _exit_status, main
from s3harness.coordinator import SETUP_FAILED_EXIT_CODE

from conftest import SLEEPER_COMMAND


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path, service_data, monkeypatch):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "harness.yaml"
    path.write_text(yaml.dump({
        "service": service_data,
        "preparation": {"enabled": False},
        "workload": {"command": [sys.executable, "-c", "raise SystemExit(5)"]},
        "logging": {"console": False},
    }))
    return path


def test_version(runner):
    result = runner.invoke(main, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


class TestRun:
    def test_default_workload_exit_code(self, runner, config_file):
        result = runner.invoke(main, ["run", "--config", str(config_file)])

        assert result.exit_code == 5

    def test_command_after_double_dash(self, runner, config_file):
        result = runner.invoke(main, [
            "run", "--config", str(config_file), "--",
            sys.executable, "-c", "import sys; sys.exit(4)",
        ])

        assert result.exit_code == 4

    def test_no_service(self, runner, config_file):
        code = "import os, sys; sys.exit('PIP_ACCEL_S3_URL' in os.environ)"
        result = runner.invoke(main, [
            "run", "--config", str(config_file), "--no-service", "--",
            sys.executable, "-c", code,
        ])

        assert result.exit_code == 0

    def test_invalid_config(self, runner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        path = tmp_path / "harness.yaml"
        path.write_text(yaml.dump({"service": {"port": -1}}))

        result = runner.invoke(main, ["run", "--config", str(path)])

        assert result.exit_code == SETUP_FAILED_EXIT_CODE
        assert "Configuration invalid" in result.output

    def test_interrupt(self, runner, config_file, monkeypatch):
        def interrupted(self, *args, **kwargs):
            raise KeyboardInterrupt

        monkeypatch.setattr("s3harness.cli.RunCoordinator.run", interrupted)

        result = runner.invoke(main, ["run", "--config", str(config_file)])

        assert result.exit_code == 130


class TestClean:
    def test_nothing_to_clean(self, runner, config_file):
        result = runner.invoke(main, ["clean", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Nothing to clean" in result.output

    def test_kills_left_over_service(self, runner, config_file, state_root):
        stale = subprocess.Popen(SLEEPER_COMMAND)
        try:
            (state_root / "fakes3-data").mkdir(parents=True)
            (state_root / "fakes3.pid").write_text(str(stale.pid))

            result = runner.invoke(main, ["clean", "--config", str(config_file)])

            assert result.exit_code == 0
            assert "Removed storage service state" in result.output
            assert stale.wait(timeout=5) < 0
        finally:
            if stale.poll() is None:
                stale.kill()
                stale.wait()

        assert not (state_root / "fakes3.pid").exists()
        assert not (state_root / "fakes3-data").exists()


class TestStatus:
    def test_clean_state(self, runner, config_file):
        result = runner.invoke(main, ["status", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "No left-over storage service state" in result.output

    def test_reports_left_over_state(self, runner, config_file, state_root):
        (state_root / "fakes3-data").mkdir(parents=True)
        (state_root / "fakes3.pid").write_text("999999999")

        result = runner.invoke(main, ["status", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "not running" in result.output
        assert "s3harness clean" in result.output


class TestValidate:
    def test_valid(self, runner, config_file):
        result = runner.invoke(main, ["validate", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    def test_built_in_defaults(self, runner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        result = runner.invoke(main, ["validate"])

        assert result.exit_code == 0
        assert "built-in defaults" in result.output


@pytest.mark.parametrize("returncode, expected", [(0, 0), (3, 3), (-9, 137), (-15, 143)])
def test_exit_status(returncode, expected):
    assert _exit_status(returncode) == expected
