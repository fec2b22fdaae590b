"""Async subprocess utilities.

Every external tool this package drives (tailscale, ssh, rsync, scp, git)
goes through `async_subprocess_run()` so that all of them share the same
timeout semantics: when the deadline expires the whole process group of the
child is killed, not just the direct child. An `ssh` or `rsync` invocation
may fork helpers (ProxyCommand, the remote shell transport) that would
otherwise linger and keep file descriptors open.

Use `async_subprocess_run()` instead of `subprocess.run()` in async contexts.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
from collections.abc import Sequence
from dataclasses import dataclass

logger = logging.getLogger(__name__)

__all__ = [
    "SubprocessError",
    "SubprocessTimeoutError",
    "SubprocessResult",
    "async_subprocess_run",
    "command_exists",
]


class SubprocessError(Exception):
    """Error raised when async subprocess execution fails."""

    def __init__(
        self,
        message: str,
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class SubprocessTimeoutError(SubprocessError):
    """Error raised when subprocess times out."""

    pass


@dataclass
class SubprocessResult:
    """Result of async subprocess execution.

    Attributes:
        returncode: Exit code from the process (0 = success).
        stdout: Captured standard output as string.
        stderr: Captured standard error as string.
    """

    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        """Check if process exited successfully (returncode == 0)."""
        return self.returncode == 0


def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the process group led by ``proc``, falling back to the child."""
    if proc.returncode is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass
    except PermissionError as e:
        logger.warning(f"Failed to terminate process group {proc.pid}: {e}")
        proc.kill()


async def async_subprocess_run(
    cmd: Sequence[str],
    *,
    timeout: float = 60.0,
    check: bool = False,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    input_text: str | None = None,
) -> SubprocessResult:
    """Run a subprocess asynchronously without blocking the event loop.

    The child is started in its own session so that a timeout can kill the
    entire process group.

    Args:
        cmd: Command and arguments as a sequence (e.g., ["ls", "-la"]).
        timeout: Maximum time to wait in seconds (default: 60).
        check: If True, raise SubprocessError on non-zero exit code.
        cwd: Working directory for the subprocess.
        env: Environment variables for the subprocess.
        input_text: Optional text written to the child's stdin.

    Returns:
        SubprocessResult with returncode, stdout, and stderr.

    Raises:
        SubprocessTimeoutError: If the process exceeds the timeout.
        SubprocessError: If check=True and process exits with non-zero code.
        OSError: If the command cannot be executed (e.g. FileNotFoundError).
    """
    proc: asyncio.subprocess.Process | None = None
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
            start_new_session=(os.name == "posix"),
        )

        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(input_text.encode() if input_text is not None else None),
            timeout=timeout,
        )

        stdout = stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else ""
        stderr = stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else ""
        returncode = proc.returncode or 0

        result = SubprocessResult(
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
        )

        if check and returncode != 0:
            raise SubprocessError(
                f"Command {cmd[0]} failed with exit code {returncode}: {stderr.strip()}",
                returncode=returncode,
                stdout=stdout,
                stderr=stderr,
            )

        return result

    except asyncio.TimeoutError:
        if proc is not None:
            _kill_process_group(proc)
            await proc.wait()
        raise SubprocessTimeoutError(
            f"Command {cmd[0]} timed out after {timeout}s",
            returncode=-1,
            stdout="",
            stderr="",
        )


def command_exists(name: str) -> bool:
    """Return True if ``name`` resolves to an executable on PATH."""
    return shutil.which(name) is not None
