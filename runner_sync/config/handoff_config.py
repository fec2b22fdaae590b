"""Handoff configuration.

One ``HandoffConfig`` is assembled at startup from layered sources and then
passed by reference to every component; nothing below the CLI reads
``os.environ`` directly.

Layer order (later wins):
    1. Dataclass defaults
    2. YAML config file (``--config`` or ``runner-sync.yaml`` in the working dir)
    3. ``.env`` file in the working dir (only keys missing from the process env)
    4. Process environment
    5. CLI flags

Usage:
    from runner_sync.config.handoff_config import HandoffConfig

    config = HandoffConfig.load(cli_overrides={"verbose": True})
    config.raise_if_invalid()
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, ClassVar

import yaml
from dotenv import dotenv_values

from runner_sync.core.error_handler import ValidationError

logger = logging.getLogger(__name__)

__all__ = [
    "HandoffConfig",
    "DEFAULT_METADATA_PATH",
    "RUNNER_DATA_DIR",
    "parse_bool",
    "parse_list",
]

RUNNER_DATA_DIR = ".runner-data"
RUNNER_DATA_SUBDIRS = ("logs", "pids", "data-services", "tmp")
DEFAULT_METADATA_PATH = "/var/tmp/runner-tailscale-sync-metadata.json"
DEFAULT_CONFIG_FILENAME = "runner-sync.yaml"

# Conventional CI work roots probed when a peer has no metadata record
DEFAULT_WORK_DIR_CANDIDATES = (
    "/home/runner/work",       # GitHub-hosted Linux runners
    "/home/vsts/work",         # Azure Pipelines Linux agents
    "/runner/_work",           # Self-hosted runner containers
    "~/work",
)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def parse_bool(value: Any, default: bool = False) -> bool:
    """Parse "1/true/yes/on" (case-insensitive) as True, anything else as False."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def parse_list(value: Any) -> tuple[str, ...]:
    """Parse a comma-separated string (or a YAML list) into a tuple of items."""
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        items = value
    else:
        items = str(value).split(",")
    return tuple(s for s in (str(item).strip() for item in items) if s)


def _derive_scp_path(ssh_path: str) -> str:
    """Derive the scp executable from a custom ssh path (``/opt/x/ssh`` -> ``/opt/x/scp``)."""
    if ssh_path.endswith("ssh"):
        return ssh_path[: -len("ssh")] + "scp"
    return "scp"


@dataclass(frozen=True)
class HandoffConfig:
    """Complete runner-sync configuration."""

    # Maps environment variable -> (field name, parser)
    ENV_FIELDS: ClassVar[dict[str, tuple[str, str]]] = {
        "TOOL_CWD": ("cwd", "path"),
        "TAILSCALE_ENABLE": ("overlay_enabled", "bool"),
        "TAILSCALE_CLIENT_ID": ("tailscale_client_id", "str"),
        "TAILSCALE_CLIENT_SECRET": ("tailscale_client_secret", "str"),
        "TAILSCALE_TAGS": ("tailscale_tags", "str"),
        "SERVICES_TO_STOP": ("services_to_stop", "list"),
        "GIT_PUSH_ENABLED": ("publish_enabled", "bool"),
        "GIT_BRANCH": ("publish_branch", "str"),
        "SSH_PATH": ("ssh_path", "str"),
        "RSYNC_PATH": ("rsync_path", "str"),
        "SCP_PATH": ("scp_path", "str"),
        "RUNNER_SYNC_REMOTE_USERS": ("remote_users", "list"),
        "RUNNER_SYNC_WORK_DIRS": ("work_dir_candidates", "list"),
        "RUNNER_SYNC_SSH_TIMEOUT": ("ssh_command_timeout", "float"),
        "RUNNER_SYNC_CONNECT_TIMEOUT": ("ssh_connect_timeout", "int"),
        "RUNNER_SYNC_TRANSFER_TIMEOUT": ("transfer_timeout", "float"),
        "RUNNER_SYNC_PROBE_CONCURRENCY": ("probe_concurrency", "int"),
        "RUNNER_SYNC_METADATA_PATH": ("metadata_path", "str"),
    }

    cwd: Path = field(default_factory=Path.cwd)

    # Overlay network
    overlay_enabled: bool = False
    tailscale_client_id: str = ""
    tailscale_client_secret: str = ""
    tailscale_tags: str = "tag:ci"
    join_timeout: float = 30.0

    # Predecessor
    services_to_stop: tuple[str, ...] = ("cloudflared", "pocketbase", "http-server")
    remote_users: tuple[str, ...] = ("runner", "root")
    work_dir_candidates: tuple[str, ...] = DEFAULT_WORK_DIR_CANDIDATES
    metadata_path: str = DEFAULT_METADATA_PATH
    probe_concurrency: int = 4
    stop_wait_seconds: float = 5.0

    # Publishing
    publish_enabled: bool = True
    publish_branch: str = "main"
    publish_retries: int = 3
    publish_retry_delay: float = 2.0

    # External tools
    ssh_path: str = "ssh"
    rsync_path: str = "rsync"
    scp_path: str = ""

    # Timeouts (seconds)
    ssh_connect_timeout: int = 10
    ssh_command_timeout: float = 30.0
    transfer_timeout: float = 600.0

    # Console
    verbose: bool = False
    quiet: bool = False

    platform: str = field(default_factory=lambda: sys.platform)
    environ: Mapping[str, str] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.scp_path:
            object.__setattr__(self, "scp_path", _derive_scp_path(self.ssh_path))
        if self.probe_concurrency <= 0:
            raise ValidationError("probe_concurrency must be > 0")
        if self.transfer_timeout <= 0 or self.ssh_command_timeout <= 0:
            raise ValidationError("timeouts must be > 0")

    # -------------------------------------------------------------------------
    # Derived paths
    # -------------------------------------------------------------------------

    @property
    def runner_data_dir(self) -> Path:
        return self.cwd / RUNNER_DATA_DIR

    @property
    def directories_to_ensure(self) -> list[Path]:
        return [self.runner_data_dir] + [self.runner_data_dir / sub for sub in RUNNER_DATA_SUBDIRS]

    @property
    def is_windows(self) -> bool:
        return self.platform.startswith("win")

    @property
    def is_linux(self) -> bool:
        return self.platform.startswith("linux")

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self) -> list[str]:
        """Return a list of validation errors (empty when valid)."""
        errors = []
        if self.overlay_enabled:
            if not self.tailscale_client_id:
                errors.append("TAILSCALE_CLIENT_ID is required when TAILSCALE_ENABLE=1")
            if not self.tailscale_client_secret:
                errors.append("TAILSCALE_CLIENT_SECRET is required when TAILSCALE_ENABLE=1")
        if self.publish_enabled and not self.publish_branch:
            errors.append("GIT_BRANCH must not be empty when GIT_PUSH_ENABLED=1")
        if not self.remote_users:
            errors.append("RUNNER_SYNC_REMOTE_USERS must name at least one account")
        return errors

    def raise_if_invalid(self) -> None:
        errors = self.validate()
        if errors:
            raise ValidationError("Validation failed:\n  - " + "\n  - ".join(errors))

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    @classmethod
    def _coerce(cls, name: str, kind: str, raw: Any) -> Any:
        if kind == "bool":
            return parse_bool(raw)
        if kind == "list":
            return parse_list(raw)
        if kind == "path":
            return Path(str(raw)).expanduser()
        try:
            if kind == "int":
                return int(raw)
            if kind == "float":
                return float(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"{name} must be a number, got {raw!r}")
        return str(raw).strip()

    @staticmethod
    def _kind_of(default: Any) -> str:
        if isinstance(default, bool):
            return "bool"
        if isinstance(default, int):
            return "int"
        if isinstance(default, float):
            return "float"
        if isinstance(default, tuple):
            return "list"
        if isinstance(default, Path):
            return "path"
        return "str"

    @classmethod
    def _field_kinds(cls) -> dict[str, str]:
        return {name: kind for name, kind in cls.ENV_FIELDS.values()}

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any], base: HandoffConfig | None = None) -> HandoffConfig:
        """Overlay snake_case ``values`` onto ``base`` (defaults when None)."""
        base = base or cls()
        known = {f.name for f in fields(cls)}
        kinds = cls._field_kinds()
        updates: dict[str, Any] = {}
        for name, raw in values.items():
            if name not in known or name == "environ":
                logger.warning(f"Ignoring unknown config key: {name}")
                continue
            if raw is None:
                continue
            kind = kinds.get(name) or cls._kind_of(getattr(base, name))
            updates[name] = cls._coerce(name, kind, raw)
        if "ssh_path" in updates and "scp_path" not in updates and "scp_path" not in values:
            updates["scp_path"] = ""
        return replace(base, **updates)

    @classmethod
    def from_environ(cls, environ: Mapping[str, str], base: HandoffConfig | None = None) -> HandoffConfig:
        """Overlay recognised environment variables onto ``base``."""
        values = {
            field_name: environ[env_key]
            for env_key, (field_name, _kind) in cls.ENV_FIELDS.items()
            if environ.get(env_key) not in (None, "")
        }
        return cls.from_mapping(values, base=base)

    @staticmethod
    def _read_yaml(path: Path) -> dict[str, Any]:
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ValidationError(f"Cannot read config file {path}: {e}")
        if not isinstance(data, dict):
            raise ValidationError(f"Config file {path} must contain a mapping")
        return data

    @classmethod
    def load(
        cls,
        cli_overrides: Mapping[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
        config_file: Path | None = None,
    ) -> HandoffConfig:
        """Assemble the configuration from every layer.

        Args:
            cli_overrides: snake_case values from CLI flags (None values ignored).
            environ: Environment snapshot (default: a copy of ``os.environ``).
            config_file: Explicit YAML file; otherwise ``runner-sync.yaml`` in the cwd.

        Raises:
            ValidationError: If a layer holds an unreadable or ill-typed value.
        """
        cli_overrides = {k: v for k, v in (cli_overrides or {}).items() if v is not None}
        process_env = dict(os.environ if environ is None else environ)

        # The working dir decides where the file layers live, so resolve it first
        cwd_raw = cli_overrides.get("cwd") or process_env.get("TOOL_CWD") or os.getcwd()
        cwd = Path(str(cwd_raw)).expanduser().resolve()

        config = cls(cwd=cwd)

        yaml_path = Path(config_file) if config_file else cwd / DEFAULT_CONFIG_FILENAME
        if config_file or yaml_path.exists():
            config = cls.from_mapping(cls._read_yaml(yaml_path), base=config)

        dotenv_path = cwd / ".env"
        merged_env: dict[str, str] = {}
        if dotenv_path.exists():
            merged_env.update({k: v for k, v in dotenv_values(dotenv_path).items() if v is not None})
        merged_env.update(process_env)

        config = cls.from_environ(merged_env, base=config)
        config = cls.from_mapping(cli_overrides, base=config)
        return replace(config, cwd=Path(config.cwd).resolve(), environ=merged_env)
