import logging
import os
import socket
import sys

import pytest

from s3harness.config import HarnessConfig
from s3harness.environment import CI_MARKERS


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# Stands in for fakes3: serves the data directory over HTTP
HTTP_SERVER_COMMAND = [
    sys.executable, "-m", "http.server", "{port}",
    "--bind", "{host}", "--directory", "{data_dir}",
]

SLEEPER_COMMAND = [sys.executable, "-c", "import time; time.sleep(60)"]


class FakeProcessControl:
    """
    Recording ProcessControl double.

    With exits_after_probe=True a process reported alive exits right after
    the probe, so the following terminate() hits a dead pid.
    """

    def __init__(self, alive=(), exits_after_probe=False):
        self.alive = set(alive)
        self.exits_after_probe = exits_after_probe
        self.probed = []
        self.terminated = []

    def is_alive(self, pid):
        self.probed.append(pid)
        result = pid in self.alive
        if self.exits_after_probe:
            self.alive.discard(pid)
        return result

    def terminate(self, pid):
        self.terminated.append(pid)
        self.alive.discard(pid)


@pytest.fixture
def port():
    return free_port()


@pytest.fixture
def state_root(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def service_data(port, state_root):
    return {
        "command": list(HTTP_SERVER_COMMAND),
        "host": "127.0.0.1",
        "port": port,
        "state_root": str(state_root),
        "ready_timeout": 15,
        "poll_interval": 0.1,
        "bucket": "test-bucket",
    }


@pytest.fixture
def harness_config(service_data):
    return HarnessConfig({
        "service": service_data,
        "preparation": {"steps": []},
        "workload": {"command": [sys.executable, "-c", "raise SystemExit(0)"]},
    })


@pytest.fixture
def clean_environ():
    """Parent environment without harness settings or CI markers."""
    return {
        key: value for key, value in os.environ.items()
        if not key.startswith("PIP_ACCEL_") and key not in CI_MARKERS
    }


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger = logging.getLogger("s3harness")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
