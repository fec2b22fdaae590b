"""Shared fixtures for runner-sync tests."""

from __future__ import annotations

import logging
import os
import stat

import pytest

from runner_sync.config.handoff_config import HandoffConfig
from runner_sync.core.logging_config import PACKAGE_LOGGER


@pytest.fixture
def make_config(tmp_path):
    """Build a HandoffConfig rooted in a temp dir."""

    def _make(**overrides) -> HandoffConfig:
        values = {
            "cwd": tmp_path,
            "platform": "linux",
            "metadata_path": str(tmp_path / "meta" / "runner-metadata.json"),
            "stop_wait_seconds": 0.0,
            "publish_retry_delay": 0.0,
        }
        values.update(overrides)
        return HandoffConfig(**values)

    return _make


@pytest.fixture
def config(make_config) -> HandoffConfig:
    return make_config()


@pytest.fixture
def local_shell(tmp_path, monkeypatch):
    """Fake ssh, sudo and systemctl so remote scripts run in a local bash.

    systemctl exits with ``$FAKE_SYSTEMCTL_RC`` (default 0).
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    scripts = {
        # ssh runs its last argument, the remote command
        "ssh": '#!/bin/sh\nfor arg; do last=$arg; done\nexec bash -c "$last"\n',
        "sudo": '#!/bin/sh\nexec "$@"\n',
        "systemctl": '#!/bin/sh\nexit "${FAKE_SYSTEMCTL_RC:-0}"\n',
    }
    for name, body in scripts.items():
        path = bin_dir / name
        path.write_text(body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    return bin_dir


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo setup_logging() so caplog sees records in later tests."""
    yield
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
