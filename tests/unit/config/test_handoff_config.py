"""Tests for handoff_config.py."""

from pathlib import Path

import pytest

from runner_sync.config.handoff_config import (
    HandoffConfig,
    parse_bool,
    parse_list,
)
from runner_sync.core.error_handler import ValidationError


class TestParsers:
    """Tests for parse_bool() and parse_list()."""

    @pytest.mark.parametrize("value", ["1", "true", "TRUE", "yes", "on", True])
    def test_truthy(self, value):
        assert parse_bool(value) is True

    @pytest.mark.parametrize("value", ["0", "false", "no", "", "maybe", False])
    def test_falsy(self, value):
        assert parse_bool(value) is False

    def test_list_from_string(self):
        """Comma-separated strings are trimmed and empties dropped."""
        assert parse_list(" a, b ,,c ") == ("a", "b", "c")

    def test_list_from_yaml_list(self):
        assert parse_list(["a", " b "]) == ("a", "b")


class TestDefaults:
    """Tests for default values and derived fields."""

    def test_defaults(self, tmp_path):
        config = HandoffConfig(cwd=tmp_path)
        assert config.overlay_enabled is False
        assert config.tailscale_tags == "tag:ci"
        assert config.services_to_stop == ("cloudflared", "pocketbase", "http-server")
        assert config.publish_enabled is True
        assert config.publish_branch == "main"
        assert config.remote_users == ("runner", "root")
        assert config.runner_data_dir == tmp_path / ".runner-data"

    def test_scp_derived_from_ssh(self, tmp_path):
        """A custom ssh path implies the scp next to it."""
        assert HandoffConfig(cwd=tmp_path).scp_path == "scp"
        assert HandoffConfig(cwd=tmp_path, ssh_path="/opt/openssh/bin/ssh").scp_path == "/opt/openssh/bin/scp"

    def test_directories_to_ensure(self, tmp_path):
        names = [p.name for p in HandoffConfig(cwd=tmp_path).directories_to_ensure]
        assert names == [".runner-data", "logs", "pids", "data-services", "tmp"]

    def test_rejects_non_positive_concurrency(self, tmp_path):
        with pytest.raises(ValidationError):
            HandoffConfig(cwd=tmp_path, probe_concurrency=0)


class TestValidation:
    """Tests for validate()."""

    def test_overlay_requires_credentials(self, tmp_path):
        """Both credentials are required when the overlay is on."""
        config = HandoffConfig(cwd=tmp_path, overlay_enabled=True)
        errors = config.validate()
        assert any("TAILSCALE_CLIENT_ID" in e for e in errors)
        assert any("TAILSCALE_CLIENT_SECRET" in e for e in errors)
        with pytest.raises(ValidationError) as exc_info:
            config.raise_if_invalid()
        assert exc_info.value.exit_code == 2

    def test_valid_overlay(self, tmp_path):
        config = HandoffConfig(
            cwd=tmp_path, overlay_enabled=True,
            tailscale_client_id="id-123456", tailscale_client_secret="secret-123456",
        )
        assert config.validate() == []


class TestFromEnviron:
    """Tests for from_environ()."""

    def test_reads_known_variables(self, tmp_path):
        environ = {
            "TAILSCALE_ENABLE": "1",
            "TAILSCALE_TAGS": "ci,deploy",
            "SERVICES_TO_STOP": "a, b",
            "GIT_PUSH_ENABLED": "false",
            "GIT_BRANCH": "data",
            "SSH_PATH": "/opt/ssh",
            "RUNNER_SYNC_PROBE_CONCURRENCY": "8",
            "RUNNER_SYNC_TRANSFER_TIMEOUT": "120",
        }
        config = HandoffConfig.from_environ(environ, base=HandoffConfig(cwd=tmp_path))
        assert config.overlay_enabled is True
        assert config.tailscale_tags == "ci,deploy"
        assert config.services_to_stop == ("a", "b")
        assert config.publish_enabled is False
        assert config.publish_branch == "data"
        assert config.scp_path == "/opt/scp"
        assert config.probe_concurrency == 8
        assert config.transfer_timeout == 120.0

    def test_bad_number_is_validation_error(self, tmp_path):
        with pytest.raises(ValidationError):
            HandoffConfig.from_environ(
                {"RUNNER_SYNC_PROBE_CONCURRENCY": "many"}, base=HandoffConfig(cwd=tmp_path),
            )

    def test_empty_values_ignored(self, tmp_path):
        config = HandoffConfig.from_environ({"GIT_BRANCH": ""}, base=HandoffConfig(cwd=tmp_path))
        assert config.publish_branch == "main"


class TestLoad:
    """Tests for the layered load()."""

    def test_layer_precedence(self, tmp_path):
        """CLI > process env > .env > YAML > defaults."""
        (tmp_path / "runner-sync.yaml").write_text(
            "publish_branch: from-yaml\n"
            "tailscale_tags: tag:yaml\n"
            "services_to_stop: [yaml-svc]\n"
            "publish_retries: 7\n"
        )
        (tmp_path / ".env").write_text("GIT_BRANCH=from-dotenv\nTAILSCALE_TAGS=tag:dotenv\n")
        environ = {"TOOL_CWD": str(tmp_path), "GIT_BRANCH": "from-env"}

        config = HandoffConfig.load(cli_overrides={"verbose": True}, environ=environ)

        assert config.cwd == tmp_path.resolve()
        assert config.publish_branch == "from-env"
        assert config.tailscale_tags == "tag:dotenv"
        assert config.services_to_stop == ("yaml-svc",)
        assert config.publish_retries == 7
        assert config.verbose is True

    def test_cli_cwd_wins(self, tmp_path):
        other = tmp_path / "other"
        other.mkdir()
        config = HandoffConfig.load(cli_overrides={"cwd": str(other)}, environ={"TOOL_CWD": str(tmp_path)})
        assert config.cwd == other.resolve()

    def test_environ_snapshot_includes_dotenv(self, tmp_path):
        """The merged environment is kept for log masking."""
        (tmp_path / ".env").write_text("TAILSCALE_CLIENT_SECRET=tskey-client-abcdef\n")
        config = HandoffConfig.load(environ={"TOOL_CWD": str(tmp_path)})
        assert config.environ["TAILSCALE_CLIENT_SECRET"] == "tskey-client-abcdef"
        assert config.tailscale_client_secret == "tskey-client-abcdef"

    def test_explicit_config_file_must_exist(self, tmp_path):
        with pytest.raises(ValidationError):
            HandoffConfig.load(environ={"TOOL_CWD": str(tmp_path)}, config_file=tmp_path / "missing.yaml")

    def test_yaml_must_be_mapping(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValidationError):
            HandoffConfig.load(environ={"TOOL_CWD": str(tmp_path)}, config_file=path)

    def test_unknown_yaml_keys_ignored(self, tmp_path):
        path = tmp_path / "extra.yaml"
        path.write_text("not_a_setting: 1\n")
        config = HandoffConfig.load(environ={"TOOL_CWD": str(tmp_path)}, config_file=Path(path))
        assert config.publish_branch == "main"
