"""Working-data mirroring from the predecessor.

``DataReconciler.reconcile()`` mirrors the predecessor's ``.runner-data``
directory into ours. rsync is tried first (resumable, mirrors deletions);
scp is the fallback when rsync fails or is not installed on either side.

A remote directory that is missing or empty is a successful no-op.

Usage:
    from runner_sync.coordination.data_reconciler import DataReconciler

    reconciler = DataReconciler(config, executor)
    result = await reconciler.reconcile(predecessor)
    logger.info(f"Pulled {result.transferred_bytes} bytes via {result.transport}")
"""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from runner_sync.config.handoff_config import HandoffConfig
from runner_sync.core.error_handler import DataSyncError, SyncError
from runner_sync.core.workspace import directory_size
from runner_sync.coordination.predecessor_selector import remote_path
from runner_sync.coordination.transfer_commands import (
    RsyncOptions,
    ScpOptions,
    TransferCommand,
    TransferCommandBuilder,
    parse_rsync_transferred_bytes,
    select_transfer_mode,
)
from runner_sync.execution.ssh_executor import SSHExecutor, SSHOptions
from runner_sync.models.peer import Candidate
from runner_sync.utils.async_utils import SubprocessTimeoutError, async_subprocess_run

logger = logging.getLogger(__name__)

__all__ = [
    "DataReconciler",
    "ReconcileResult",
    "RemoteDirState",
]


class RemoteDirState(Enum):
    MISSING = "missing"
    EMPTY = "empty"
    NONEMPTY = "nonempty"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one mirror."""

    transferred_bytes: int = 0
    transport: str | None = None
    skipped: bool = False
    remote_state: RemoteDirState = RemoteDirState.UNKNOWN

    def to_dict(self) -> dict:
        return {
            "transferred_bytes": self.transferred_bytes,
            "transport": self.transport,
            "skipped": self.skipped,
            "remote_state": self.remote_state.value,
        }


class DataReconciler:
    """Mirrors a predecessor's working data into the local working directory."""

    def __init__(self, config: HandoffConfig, executor: SSHExecutor):
        self.config = config
        self.executor = executor

    @property
    def _ssh_options(self) -> SSHOptions:
        return SSHOptions(connect_timeout=self.config.ssh_connect_timeout)

    async def remote_state(self, target: str, path: str) -> RemoteDirState:
        quoted = remote_path(path)
        out = await self.executor.capture(
            target,
            f'if [ -d {quoted} ]; then '
            f'if [ -z "$(ls -A {quoted} 2>/dev/null)" ]; then echo empty; else echo nonempty; fi; '
            f'else echo missing; fi',
        )
        try:
            return RemoteDirState(out)
        except ValueError:
            return RemoteDirState.UNKNOWN

    def rsync_command(self, target: str, remote_dir: str, local_dir: Path) -> TransferCommand:
        opts = RsyncOptions(
            source=f"{target}:{remote_dir.rstrip('/')}/",
            destination=f"{local_dir}/",
            mode=select_transfer_mode(target),
            ssh=self._ssh_options,
            ssh_path=self.config.ssh_path,
            rsync_path=self.config.rsync_path,
        )
        return TransferCommandBuilder.rsync(opts, timeout=self.config.transfer_timeout)

    def scp_command(self, target: str, remote_dir: str, local_dir: Path) -> TransferCommand:
        remote_dir = remote_dir.rstrip("/")
        if posixpath.basename(remote_dir) == local_dir.name:
            # Copy the directory itself into our parent so dotfiles come along
            source, destination = f"{target}:{remote_dir}", str(local_dir.parent)
        else:
            source, destination = f"{target}:{remote_dir}/*", str(local_dir)
        opts = ScpOptions(
            source=source,
            destination=destination,
            mode=select_transfer_mode(target),
            ssh=self._ssh_options,
            scp_path=self.config.scp_path,
        )
        return TransferCommandBuilder.scp(opts, timeout=self.config.transfer_timeout)

    async def _run(self, command: TransferCommand) -> tuple[bool, str, str]:
        """Run one transfer attempt; returns (ok, stdout, failure text)."""
        logger.debug(f"Running {command.description}")
        try:
            result = await async_subprocess_run(command.args, timeout=command.timeout)
        except SubprocessTimeoutError:
            return False, "", f"{command.transport} timed out after {command.timeout:.0f}s"
        except FileNotFoundError:
            return False, "", f"{command.args[0]} not found"
        except OSError as e:
            return False, "", f"{command.transport} could not start: {e}"
        if not result.success:
            return False, result.stdout, (
                f"{command.transport} exited with code {result.returncode}: {result.stderr.strip()}"
            )
        return True, result.stdout, ""

    async def reconcile(self, predecessor: Candidate) -> ReconcileResult:
        """Mirror the predecessor's working data locally.

        Raises:
            SyncError: The candidate carries no target or data path.
            DataSyncError: rsync and scp both failed.
        """
        target = predecessor.ssh_target
        remote_dir = predecessor.remote_data_path
        if target is None or not remote_dir:
            raise SyncError(f"Predecessor {predecessor.peer.display_name} has no data path to pull from")

        state = await self.remote_state(target, remote_dir)
        if state in (RemoteDirState.MISSING, RemoteDirState.EMPTY):
            logger.info(f"Remote {remote_dir} is {state.value}; nothing to pull")
            return ReconcileResult(skipped=True, remote_state=state)

        local_dir = self.config.runner_data_dir
        local_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Syncing data from {target}:{remote_dir} to {local_dir}")

        ok, stdout, failure = await self._run(self.rsync_command(target, remote_dir, local_dir))
        if ok:
            transferred = parse_rsync_transferred_bytes(stdout)
            logger.info(f"Data synced via rsync ({transferred} bytes)")
            return ReconcileResult(transferred_bytes=transferred, transport="rsync", remote_state=state)

        logger.warning(f"rsync failed, falling back to scp: {failure}")
        ok, _stdout, failure = await self._run(self.scp_command(target, remote_dir, local_dir))
        if ok:
            transferred = directory_size(local_dir)
            logger.info(f"Data synced via scp ({transferred} bytes)")
            return ReconcileResult(transferred_bytes=transferred, transport="scp", remote_state=state)

        raise DataSyncError(
            f"All transfer methods failed for {target}:{remote_dir}",
            last_failure=failure,
        )
