"""Filesystem locations owned by the ephemeral storage service."""

import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

DEFAULT_STATE_ROOT = Path(tempfile.gettempdir()) / "pip-accel-test"

PID_FILE_NAME = "fakes3.pid"
DATA_DIR_NAME = "fakes3-data"
LOG_FILE_NAME = "fakes3.log"


@dataclass(frozen=True)
class StatePaths:
    """Pid file, data directory and log file under one fixed root."""

    root: Path

    @property
    def pid_file(self) -> Path:
        return self.root / PID_FILE_NAME

    @property
    def data_dir(self) -> Path:
        return self.root / DATA_DIR_NAME

    @property
    def log_file(self) -> Path:
        return self.root / LOG_FILE_NAME

    @classmethod
    def from_root(cls, root: Optional[Union[str, Path]] = None) -> "StatePaths":
        """Build paths below ``root`` (defaults to DEFAULT_STATE_ROOT)."""
        if root is None:
            return cls(DEFAULT_STATE_ROOT)
        return cls(Path(root).expanduser())
