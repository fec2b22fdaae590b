"""
Runner metadata record.

Written by every runner to a fixed, world-readable path before it begins
serving. A successor reads it over SSH to locate the predecessor's working
data without guessing paths. The JSON layout is shared with older
runner-sync releases, hence the camelCase keys.

    {
      "timestamp": "2026-10-19T09:14:03.120Z",
      "runner": {"user": "runner", "runnerDataDir": "/home/runner/work/app/app/.runner-data", ...},
      "env": {"GITHUB_RUN_ID": "123", ...}
    }
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field

# Environment variables captured as the CI-provider fingerprint
FINGERPRINT_ENV_KEYS = (
    "HOME", "USER", "PATH", "SHELL",
    # Azure Pipelines
    "AGENT_NAME", "AGENT_ID", "AGENT_WORKFOLDER", "BUILD_BUILDID", "SYSTEM_TEAMPROJECT",
    # GitHub Actions
    "GITHUB_ACTIONS", "GITHUB_WORKFLOW", "GITHUB_RUN_ID", "GITHUB_REPOSITORY",
    "RUNNER_NAME", "RUNNER_WORKSPACE",
    # Tailscale
    "TAILSCALE_IP", "TAILSCALE_HOSTNAME",
)


class RunnerInfo(BaseModel):
    """Identity and paths of the runner that wrote the record"""
    user: str = "unknown"
    runner_data_dir: str = Field(alias="runnerDataDir")
    work_dir: Optional[str] = Field(None, alias="workDir")
    cwd: Optional[str] = None
    platform: Optional[str] = None
    hostname: Optional[str] = None

    class Config:
        populate_by_name = True


class RemoteMetadata(BaseModel):
    """Metadata record as stored on disk"""
    captured_at: datetime = Field(alias="timestamp")
    runner: RunnerInfo
    environment: Dict[str, Optional[str]] = Field(default_factory=dict, alias="env")

    class Config:
        populate_by_name = True

    @property
    def user(self) -> str:
        return self.runner.user

    @property
    def working_data_path(self) -> str:
        return self.runner.runner_data_dir

    @property
    def host_work_dir(self) -> Optional[str]:
        return self.runner.work_dir

    @property
    def platform(self) -> Optional[str]:
        return self.runner.platform

    @property
    def hostname(self) -> Optional[str]:
        return self.runner.hostname

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)
