"""Remote command execution over SSH.

Every remote interaction with a peer runner goes through ``SSHExecutor``:

- ``execute()``: run a command, return an ``SSHResult`` (never raises for
  remote failures; raises ``ProcessError`` only if the ssh binary is missing)
- ``capture()``: stripped stdout on success, None otherwise (never raises)
- ``probe()``: reachability check via an ``echo`` canary
- ``dispatch_detached()``: start a long-running command under ``nohup`` and
  wait briefly for its exit status

Peers live on a private tailnet and are freshly provisioned every run, so
host-key checking is disabled and nothing is written to known_hosts.

Usage:
    from runner_sync.execution.ssh_executor import SSHConfig, SSHExecutor

    executor = SSHExecutor(SSHConfig.from_handoff(config))
    if await executor.probe("runner@100.101.102.103"):
        listing = await executor.capture("runner@100.101.102.103", "ls /tmp")
"""

from __future__ import annotations

import logging
import shlex
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from runner_sync.core.error_handler import ProcessError
from runner_sync.execution.ssh_error_classifier import (
    SSH_TRANSPORT_EXIT_CODE,
    SSHErrorClassifier,
    SSHFailure,
    get_ssh_error_classifier,
)
from runner_sync.utils.async_utils import SubprocessTimeoutError, async_subprocess_run

if TYPE_CHECKING:
    from runner_sync.config.handoff_config import HandoffConfig

logger = logging.getLogger(__name__)

__all__ = [
    "DetachedOutcome",
    "DetachedState",
    "PROBE_CANARY",
    "SSHConfig",
    "SSHExecutor",
    "SSHOptions",
    "SSHResult",
]

PROBE_CANARY = "OK"


@dataclass(frozen=True)
class SSHOptions:
    """``-o`` options shared by ssh, rsync's ``-e`` transport and scp."""

    connect_timeout: int = 10
    strict_host_key_checking: bool = False
    known_hosts_file: str | None = "/dev/null"
    log_level: str = "ERROR"
    batch_mode: bool = True

    def to_args(self) -> list[str]:
        args: list[str] = []
        if not self.strict_host_key_checking:
            args += ["-o", "StrictHostKeyChecking=no"]
            if self.known_hosts_file:
                args += ["-o", f"UserKnownHostsFile={self.known_hosts_file}"]
        if self.log_level:
            args += ["-o", f"LogLevel={self.log_level}"]
        if self.batch_mode:
            args += ["-o", "BatchMode=yes"]
        args += ["-o", f"ConnectTimeout={self.connect_timeout}"]
        return args

    def to_string(self, ssh_path: str = "ssh") -> str:
        """Render as a single shell string, e.g. for ``rsync -e``."""
        return shlex.join([ssh_path, *self.to_args()])


@dataclass(frozen=True)
class SSHConfig:
    """Settings for the ssh client."""

    ssh_path: str = "ssh"
    connect_timeout: int = 10
    command_timeout: float = 30.0

    @classmethod
    def from_handoff(cls, config: HandoffConfig) -> SSHConfig:
        return cls(
            ssh_path=config.ssh_path,
            connect_timeout=config.ssh_connect_timeout,
            command_timeout=config.ssh_command_timeout,
        )

    @property
    def options(self) -> SSHOptions:
        return SSHOptions(connect_timeout=self.connect_timeout)


@dataclass
class SSHResult:
    """Outcome of one remote command."""

    success: bool
    returncode: int
    stdout: str
    stderr: str
    elapsed_ms: float
    command: str
    host: str
    timed_out: bool = False
    error: str | None = None

    def __bool__(self) -> bool:
        return self.success

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class DetachedState(Enum):
    FINISHED = "finished"                # exit status collected during the wait
    RUNNING = "running"                  # still running when the wait ended
    CONNECTION_LOST = "connection_lost"  # session dropped after dispatch
    FAILED = "failed"                    # never dispatched


@dataclass(frozen=True)
class DetachedOutcome:
    """Result of ``dispatch_detached``."""

    state: DetachedState
    exit_code: int | None = None
    detail: str = ""

    @property
    def dispatched(self) -> bool:
        return self.state != DetachedState.FAILED

    @property
    def succeeded(self) -> bool:
        """Dispatched, and not known to have exited non-zero."""
        if self.state == DetachedState.FINISHED:
            return self.exit_code == 0
        return self.dispatched


class SSHExecutor:
    """Runs commands on peers through the local ssh client."""

    def __init__(self, config: SSHConfig | None = None, classifier: SSHErrorClassifier | None = None):
        self.config = config or SSHConfig()
        self._classifier = classifier or get_ssh_error_classifier()

    def _build_ssh_command(self, host: str, command: str) -> list[str]:
        return [self.config.ssh_path, *self.config.options.to_args(), host, command]

    async def execute(self, host: str, command: str, timeout: float | None = None) -> SSHResult:
        """Run ``command`` on ``host`` (``user@addr`` or ``addr``).

        Raises:
            ProcessError: The ssh executable does not exist.
        """
        timeout = timeout if timeout is not None else self.config.command_timeout
        cmd = self._build_ssh_command(host, command)
        logger.debug(f"[{host}] $ {command}")
        start = time.monotonic()
        try:
            result = await async_subprocess_run(cmd, timeout=timeout)
        except SubprocessTimeoutError:
            elapsed = (time.monotonic() - start) * 1000
            logger.debug(f"[{host}] timed out after {timeout}s: {command}")
            return SSHResult(
                success=False, returncode=-1, stdout="", stderr="",
                elapsed_ms=elapsed, command=command, host=host,
                timed_out=True, error=f"timed out after {timeout}s",
            )
        except FileNotFoundError:
            raise ProcessError(
                f"ssh executable not found: {self.config.ssh_path}",
                hint="Install an OpenSSH client or set SSH_PATH.",
            )
        except OSError as e:
            elapsed = (time.monotonic() - start) * 1000
            return SSHResult(
                success=False, returncode=-1, stdout="", stderr="",
                elapsed_ms=elapsed, command=command, host=host, error=str(e),
            )

        elapsed = (time.monotonic() - start) * 1000
        if not result.success:
            logger.debug(f"[{host}] exit {result.returncode}: {result.stderr.strip()}")
        return SSHResult(
            success=result.success,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            elapsed_ms=elapsed,
            command=command,
            host=host,
        )

    async def capture(self, host: str, command: str, timeout: float | None = None) -> str | None:
        """Stripped stdout when the command exits 0, else None. Never raises."""
        try:
            result = await self.execute(host, command, timeout=timeout)
        except ProcessError as e:
            logger.warning(f"[{host}] {e.message}")
            return None
        if not result.success:
            return None
        return result.stdout.strip()

    async def probe(self, host: str) -> bool:
        """True when ``host`` answers the canary exactly."""
        reachable = await self.capture(host, f"echo {PROBE_CANARY}") == PROBE_CANARY
        logger.debug(f"[{host}] probe {'ok' if reachable else 'failed'}")
        return reachable

    def classify(self, result: SSHResult) -> SSHFailure:
        return self._classifier.classify(result.stderr, result.returncode)

    @staticmethod
    def _detached_script(command: str, wait_seconds: float) -> str:
        rc_file = f"/tmp/runner-sync-{uuid.uuid4().hex[:12]}.rc"
        job = f"{command}; echo $? > {rc_file}"
        return (
            f"rm -f {rc_file}; "
            f"nohup sh -c {shlex.quote(job)} >/dev/null 2>&1 </dev/null & "
            f"sleep {wait_seconds:g}; "
            f"cat {rc_file} 2>/dev/null || echo running"
        )

    async def dispatch_detached(self, host: str, command: str, wait_seconds: float = 5.0) -> DetachedOutcome:
        """Start ``command`` in the background on ``host`` and wait briefly.

        The job survives the ssh session ending. A session that drops after
        the remote shell started still counts as dispatched.
        """
        script = self._detached_script(command, wait_seconds)
        result = await self.execute(host, script, timeout=wait_seconds + self.config.command_timeout)

        if result.success:
            lines = result.stdout.strip().splitlines()
            last = lines[-1].strip() if lines else ""
            if last.lstrip("-").isdigit():
                return DetachedOutcome(DetachedState.FINISHED, exit_code=int(last))
            return DetachedOutcome(DetachedState.RUNNING, detail=last)

        if result.timed_out:
            return DetachedOutcome(DetachedState.FAILED, detail=result.error or "timed out")

        if result.returncode == SSH_TRANSPORT_EXIT_CODE:
            failure = self.classify(result)
            if failure.session_established:
                logger.debug(f"[{host}] connection lost after dispatch ({failure.matched_pattern})")
                return DetachedOutcome(DetachedState.CONNECTION_LOST, detail=result.stderr.strip())
            return DetachedOutcome(DetachedState.FAILED, detail=failure.hint or result.stderr.strip())

        return DetachedOutcome(
            DetachedState.FAILED,
            exit_code=result.returncode,
            detail=result.error or result.stderr.strip(),
        )
