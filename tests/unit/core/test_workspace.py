"""Tests for workspace.py."""

import json
import stat
from datetime import datetime, timezone
from unittest.mock import patch

from runner_sync.core.workspace import (
    METADATA_FILE_MODE,
    build_metadata,
    directory_size,
    ensure_directories,
    write_metadata,
)
from runner_sync.models.runner_metadata import RemoteMetadata

NOW = datetime(2026, 10, 19, 9, 14, 3, tzinfo=timezone.utc)


class TestEnsureDirectories:
    """Tests for ensure_directories()."""

    def test_creates_tree(self, config):
        created = ensure_directories(config)
        assert config.runner_data_dir.is_dir()
        for name in ("logs", "pids", "data-services", "tmp"):
            assert (config.runner_data_dir / name).is_dir()
        assert len(created) == 5

    def test_idempotent(self, config):
        ensure_directories(config)
        (config.runner_data_dir / "logs" / "keep.log").write_text("x")
        assert ensure_directories(config) == []
        assert (config.runner_data_dir / "logs" / "keep.log").read_text() == "x"


class TestDirectorySize:
    def test_sums_nested_files(self, tmp_path):
        (tmp_path / "a").write_bytes(b"12345")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / ".hidden").write_bytes(b"123")
        assert directory_size(tmp_path) == 8

    def test_empty(self, tmp_path):
        assert directory_size(tmp_path) == 0


class TestMetadata:
    """Tests for build_metadata() and write_metadata()."""

    def test_build_uses_environment(self, make_config):
        config = make_config(environ={"RUNNER_WORKSPACE": "/home/runner/work/app", "GITHUB_RUN_ID": "42"})
        metadata = build_metadata(config, now=NOW)
        assert metadata.captured_at == NOW
        assert metadata.working_data_path == str(config.runner_data_dir)
        assert metadata.host_work_dir == "/home/runner/work/app"
        assert metadata.platform == "linux"
        assert metadata.environment["GITHUB_RUN_ID"] == "42"
        assert metadata.environment["AGENT_NAME"] is None

    def test_work_dir_falls_back_to_parent(self, make_config, tmp_path):
        metadata = build_metadata(make_config(environ={}), now=NOW)
        assert metadata.host_work_dir == str(tmp_path.parent)

    def test_write_is_world_readable_json(self, config):
        """The record uses the shared camelCase layout and mode 0644."""
        path = write_metadata(config, build_metadata(config, now=NOW))

        assert path is not None
        assert stat.S_IMODE(path.stat().st_mode) == METADATA_FILE_MODE
        data = json.loads(path.read_text())
        assert set(data) == {"timestamp", "runner", "env"}
        assert data["runner"]["runnerDataDir"] == str(config.runner_data_dir)
        assert RemoteMetadata.model_validate_json(path.read_text()).captured_at == NOW

    def test_write_failure_is_not_fatal(self, config, caplog):
        """An unwritable path logs a warning and returns None."""
        with patch("runner_sync.core.workspace.Path.write_text", side_effect=PermissionError("denied")):
            assert write_metadata(config, build_metadata(config, now=NOW)) is None
        assert "Could not write runner metadata" in caplog.text
