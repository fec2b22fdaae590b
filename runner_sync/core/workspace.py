"""Local workspace bootstrap.

Creates the ``.runner-data`` tree and writes the metadata record that a
future successor reads to find this runner's data.
"""

from __future__ import annotations

import getpass
import logging
import os
import socket
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path

from runner_sync.config.handoff_config import HandoffConfig
from runner_sync.models.runner_metadata import FINGERPRINT_ENV_KEYS, RemoteMetadata, RunnerInfo
from runner_sync.utils.exceptions import FS_ERRORS

logger = logging.getLogger(__name__)

__all__ = [
    "METADATA_FILE_MODE",
    "build_metadata",
    "directory_size",
    "ensure_directories",
    "write_metadata",
]

METADATA_FILE_MODE = 0o644

# First variable present names the CI work root
_WORK_DIR_ENV_KEYS = ("RUNNER_WORKSPACE", "AGENT_WORKFOLDER", "PIPELINE_WORKSPACE")


def ensure_directories(config: HandoffConfig) -> list[Path]:
    """Create ``.runner-data`` and its subdirectories; returns the ones created."""
    created = []
    for directory in config.directories_to_ensure:
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Created directory: {directory}")
            created.append(directory)
    return created


def directory_size(path: Path) -> int:
    """Total size in bytes of regular files below ``path``."""
    total = 0
    for item in path.rglob("*"):
        try:
            if item.is_file() and not item.is_symlink():
                total += item.stat().st_size
        except FS_ERRORS as e:
            logger.debug(f"Cannot stat {item}: {e}")
    return total


def _current_user(environ: Mapping[str, str]) -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return environ.get("USER") or environ.get("USERNAME") or "unknown"


def build_metadata(config: HandoffConfig, now: datetime | None = None) -> RemoteMetadata:
    environ = config.environ
    work_dir = next((environ[key] for key in _WORK_DIR_ENV_KEYS if environ.get(key)), str(config.cwd.parent))
    return RemoteMetadata(
        captured_at=now or datetime.now(timezone.utc),
        runner=RunnerInfo(
            user=_current_user(environ),
            runner_data_dir=str(config.runner_data_dir),
            work_dir=work_dir,
            cwd=str(config.cwd),
            platform=config.platform,
            hostname=socket.gethostname(),
        ),
        environment={key: environ.get(key) for key in FINGERPRINT_ENV_KEYS},
    )


def write_metadata(config: HandoffConfig, metadata: RemoteMetadata | None = None) -> Path | None:
    """Write the metadata record world-readable. Returns None if it could not be written."""
    metadata = metadata or build_metadata(config)
    path = Path(config.metadata_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(metadata.to_json())
        os.chmod(path, METADATA_FILE_MODE)
    except FS_ERRORS as e:
        logger.warning(f"Could not write runner metadata to {path}: {e}")
        return None
    logger.debug(f"Wrote runner metadata to {path}")
    return path
