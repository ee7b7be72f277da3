"""
s3harness - Test harness for the pip accelerator.

Runs the test workload against an ephemeral FakeS3 server and tears the
server down again, whatever the workload did.
"""

__version__ = "0.1.0"


__all__ = ["HarnessConfig", "load_config", "RunCoordinator", "RunResult"]

from .config import HarnessConfig, load_config
from .coordinator import RunCoordinator, RunResult
