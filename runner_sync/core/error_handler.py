"""Error taxonomy for runner-sync.

Every failure the CLI reports maps to one class in this module. Each class
carries the process exit code it produces and a default remediation hint
that the CLI prints next to the cause.

    RunnerSyncError          exit 1  (unclassified)
    ├── ValidationError      exit 2  missing/invalid configuration, raised before side effects
    ├── NetworkError         exit 3  overlay or remote transport unreachable
    │   └── DirectoryUnavailable     peer directory could not be queried
    ├── ProcessError         exit 4  external tool missing or non-zero exit
    └── SyncError            exit 5  data transfer failed
        └── DataSyncError            every transfer transport exhausted
"""

from __future__ import annotations

__all__ = [
    "EXIT_SUCCESS",
    "EXIT_UNCLASSIFIED",
    "RunnerSyncError",
    "ValidationError",
    "NetworkError",
    "DirectoryUnavailable",
    "ProcessError",
    "SyncError",
    "DataSyncError",
    "exit_code_for",
    "format_error",
]

EXIT_SUCCESS = 0
EXIT_UNCLASSIFIED = 1


class RunnerSyncError(Exception):
    """Base exception for all runner-sync failures."""

    exit_code: int = EXIT_UNCLASSIFIED
    default_hint: str = ""

    def __init__(self, message: str, hint: str | None = None):
        super().__init__(message)
        self.message = message
        self.hint = hint if hint is not None else self.default_hint


class ValidationError(RunnerSyncError):
    """Required configuration is missing or invalid."""

    exit_code = 2
    default_hint = "Check the environment variables listed in `runner-sync --help`."


class NetworkError(RunnerSyncError):
    """Overlay network or remote transport is unreachable."""

    exit_code = 3
    default_hint = "Verify the node joined the tailnet (`tailscale status`) and the peer is online."


class DirectoryUnavailable(NetworkError):
    """The peer directory (tailscale status) could not be queried."""

    default_hint = "Make sure tailscaled is running and the `tailscale` CLI is on PATH."


class ProcessError(RunnerSyncError):
    """An external tool is missing or exited with a non-zero status."""

    exit_code = 4
    default_hint = "Install the missing tool or override its path (SSH_PATH, RSYNC_PATH, SCP_PATH)."


class SyncError(RunnerSyncError):
    """Data transfer between runners failed."""

    exit_code = 5
    default_hint = "The mirror is restartable; re-run the sync once the predecessor is reachable."


class DataSyncError(SyncError):
    """All transfer transports were exhausted.

    Attributes:
        last_failure: Output of the last underlying transport failure.
    """

    def __init__(self, message: str, last_failure: str = "", hint: str | None = None):
        super().__init__(message, hint=hint)
        self.last_failure = last_failure


def exit_code_for(error: BaseException) -> int:
    """Map an exception to the process exit code."""
    if isinstance(error, RunnerSyncError):
        return error.exit_code
    return EXIT_UNCLASSIFIED


def format_error(error: BaseException) -> str:
    """Render an error as ``cause`` plus an optional ``Hint:`` line."""
    if isinstance(error, RunnerSyncError):
        text = f"{type(error).__name__}: {error.message}"
        if error.hint:
            text += f"\n  Hint: {error.hint}"
        return text
    return f"{type(error).__name__}: {error}"
