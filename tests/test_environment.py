"""Tests for the environment composer."""

import pytest

from s3harness import environment
from s3harness.environment import (
    build_process_env,
    compose,
    detect_ci,
    load_env_file,
)
from s3harness.service import ServiceHandle


@pytest.fixture
def handle(tmp_path):
    return ServiceHandle(
        pid=4242,
        data_dir=tmp_path / "fakes3-data",
        port=12345,
        pid_file=tmp_path / "fakes3.pid",
    )


class TestCompose:
    """Tests for compose()."""

    def test_service_settings_locally(self, handle):
        settings = compose(handle, is_ci=False, bucket="pip-accel-test-bucket")

        assert settings == {
            environment.AUTO_INSTALL: "true",
            environment.BOTO_VERBOSE: "false",
            environment.S3_URL: "http://localhost:12345",
            environment.S3_CREATE_BUCKET: "true",
            environment.S3_BUCKET: "pip-accel-test-bucket",
            environment.FAKES3_ROOT: str(handle.data_dir),
            environment.FAKES3_PID: "4242",
        }

    def test_no_bucket_on_ci(self, handle):
        settings = compose(handle, is_ci=True, bucket="pip-accel-test-bucket")

        assert environment.S3_BUCKET not in settings
        assert settings[environment.S3_URL] == "http://localhost:12345"

    def test_without_service(self):
        settings = compose(None, is_ci=False, bucket="pip-accel-test-bucket")

        assert settings == {
            environment.AUTO_INSTALL: "true",
            environment.BOTO_VERBOSE: "false",
        }

    def test_host_and_verbosity(self, handle):
        settings = compose(handle, is_ci=True, bucket="b", host="127.0.0.1", verbose_boto=True)

        assert settings[environment.S3_URL] == "http://127.0.0.1:12345"
        assert settings[environment.BOTO_VERBOSE] == "true"


class TestDetectCi:
    """Tests for detect_ci()."""

    @pytest.mark.parametrize("environ", [
        {"CI": "true"},
        {"CI": "1"},
        {"TRAVIS": "true"},
        {"CONTINUOUS_INTEGRATION": "yes"},
        {"CI": " True "},
    ])
    def test_detects_ci(self, environ):
        assert detect_ci(environ)

    @pytest.mark.parametrize("environ", [{}, {"CI": ""}, {"CI": "false"}, {"TRAVIS": "0"}])
    def test_not_ci(self, environ):
        assert not detect_ci(environ)


class TestEnvFile:
    """Tests for load_env_file()."""

    def test_no_file(self):
        assert load_env_file(None) == {}

    def test_reads_values(self, tmp_path):
        env_file = tmp_path / ".env.test"
        env_file.write_text("EXTRA_SETTING=loaded\nQUOTED=\"a b\"\nEMPTY_KEY\n")

        assert load_env_file(env_file) == {"EXTRA_SETTING": "loaded", "QUOTED": "a b"}


class TestBuildProcessEnv:
    """Tests for build_process_env()."""

    def test_overlays_settings_on_copy(self):
        base = {"PATH": "/usr/bin", environment.AUTO_INSTALL: "false"}
        result = build_process_env(base, {environment.AUTO_INSTALL: "true"})

        assert result == {"PATH": "/usr/bin", environment.AUTO_INSTALL: "true"}
        assert base[environment.AUTO_INSTALL] == "false"

    def test_inherited_service_settings_are_dropped(self):
        base = {"PATH": "/usr/bin", environment.S3_URL: "http://stale:1", environment.FAKES3_PID: "1"}
        result = build_process_env(base, compose(None, is_ci=False, bucket="b"))

        assert environment.S3_URL not in result
        assert environment.FAKES3_PID not in result

    def test_extra_settings_lose_to_harness_settings(self):
        extra = {"EXTRA": "1", environment.AUTO_INSTALL: "false", environment.S3_URL: "http://other:1"}
        result = build_process_env({}, {environment.AUTO_INSTALL: "true"}, extra)

        assert result["EXTRA"] == "1"
        assert result[environment.AUTO_INSTALL] == "true"
        assert environment.S3_URL not in result
