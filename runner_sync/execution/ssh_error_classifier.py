"""SSH failure classification.

ssh reports every transport failure as exit code 255 and leaves the cause
in stderr. The executor needs to tell the causes apart for two decisions:

- Detached dispatch: a connection dropped *after* the remote shell started
  (reset, broken pipe, closed) means the job is already running unattended
  and counts as dispatched. Failures that happen before a session exists
  (auth, host key, routing) mean nothing ran.
- User-facing hints: auth and host-key failures need different remediation
  than an offline peer.

Usage:
    from runner_sync.execution.ssh_error_classifier import get_ssh_error_classifier

    failure = get_ssh_error_classifier().classify(result.stderr, result.returncode)
    if failure.kind == SSHFailureKind.AUTH:
        ...
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

__all__ = [
    "SSHFailureKind",
    "SSHFailure",
    "SSHErrorClassifier",
    "SSH_TRANSPORT_EXIT_CODE",
]

# ssh exits with 255 when the failure is its own rather than the remote command's
SSH_TRANSPORT_EXIT_CODE = 255


class SSHFailureKind(Enum):
    """What went wrong with an ssh invocation."""

    AUTH = "auth"                # key rejected, no usable identity
    HOST_KEY = "host_key"        # known_hosts mismatch
    NETWORK = "network"          # peer not routable / name not resolvable
    CONFIG = "config"            # bad option, missing binary on either side
    CONNECTION_LOST = "connection_lost"  # session existed, then dropped
    TIMEOUT = "timeout"          # connect timed out before a session existed
    REMOTE_COMMAND = "remote_command"    # ssh worked, the command itself failed
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SSHFailure:
    """Classification of one failed ssh call."""

    kind: SSHFailureKind
    matched_pattern: str | None = None
    hint: str = ""

    @property
    def session_established(self) -> bool:
        """True when the remote shell had started before the failure."""
        return self.kind in (SSHFailureKind.CONNECTION_LOST, SSHFailureKind.REMOTE_COMMAND)

    @property
    def is_permanent(self) -> bool:
        return self.kind in (SSHFailureKind.AUTH, SSHFailureKind.HOST_KEY, SSHFailureKind.CONFIG)


# Checked in this order; first match wins
_PATTERNS: list[tuple[SSHFailureKind, str, str]] = [
    (SSHFailureKind.AUTH, r"Permission denied", "permission_denied"),
    (SSHFailureKind.AUTH, r"Authentication failed", "auth_failed"),
    (SSHFailureKind.AUTH, r"Too many authentication failures", "too_many_failures"),
    (SSHFailureKind.AUTH, r"no matching (key exchange method|cipher|MAC)", "algorithm_mismatch"),
    (SSHFailureKind.AUTH, r"sign_and_send_pubkey: signing failed", "signing_failed"),
    (SSHFailureKind.HOST_KEY, r"Host key verification failed", "host_key_verification"),
    (SSHFailureKind.HOST_KEY, r"REMOTE HOST IDENTIFICATION HAS CHANGED", "host_key_changed"),
    (SSHFailureKind.NETWORK, r"No route to host", "no_route"),
    (SSHFailureKind.NETWORK, r"Network is unreachable", "network_unreachable"),
    (SSHFailureKind.NETWORK, r"Could not resolve hostname", "hostname_unresolved"),
    (SSHFailureKind.NETWORK, r"Name or service not known", "dns_failure"),
    (SSHFailureKind.NETWORK, r"Temporary failure in name resolution", "dns_temp_failure"),
    (SSHFailureKind.NETWORK, r"Connection refused", "refused"),
    (SSHFailureKind.TIMEOUT, r"Connection timed out during banner exchange", "banner_timeout"),
    (SSHFailureKind.TIMEOUT, r"connect to host .* Connection timed out", "connect_timeout"),
    (SSHFailureKind.TIMEOUT, r"Operation timed out", "operation_timeout"),
    (SSHFailureKind.CONFIG, r"Bad configuration option", "bad_option"),
    (SSHFailureKind.CONFIG, r"command not found", "command_not_found"),
    (SSHFailureKind.CONNECTION_LOST, r"Connection reset by peer", "reset"),
    (SSHFailureKind.CONNECTION_LOST, r"Broken pipe", "broken_pipe"),
    (SSHFailureKind.CONNECTION_LOST, r"Connection to .* closed", "closed"),
    (SSHFailureKind.CONNECTION_LOST, r"Connection closed by", "closed_by_remote"),
    (SSHFailureKind.CONNECTION_LOST, r"packet_write_wait", "packet_write_wait"),
    (SSHFailureKind.CONNECTION_LOST, r"client_loop: send disconnect", "client_loop_disconnect"),
]

_HINTS = {
    SSHFailureKind.AUTH: "The predecessor rejected our key; check that both runners share the deploy key for this account.",
    SSHFailureKind.HOST_KEY: "Host key checking should be disabled; check SSH_PATH points at a standard OpenSSH client.",
    SSHFailureKind.NETWORK: "The peer is not reachable over the tailnet; confirm it is online in `tailscale status`.",
    SSHFailureKind.TIMEOUT: "The peer did not answer within the connect timeout (RUNNER_SYNC_CONNECT_TIMEOUT).",
    SSHFailureKind.CONFIG: "Check the ssh options and that the remote shell has the required tools.",
    SSHFailureKind.CONNECTION_LOST: "The connection dropped mid-session; the remote side may still be running.",
}


class SSHErrorClassifier:
    """Regex-based classifier over ssh stderr and exit code."""

    def __init__(self, patterns: list[tuple[SSHFailureKind, str, str]] | None = None):
        self._patterns = [
            (kind, re.compile(pattern, re.IGNORECASE), name)
            for kind, pattern, name in (patterns or _PATTERNS)
        ]

    def classify(self, stderr: str, exit_code: int = SSH_TRANSPORT_EXIT_CODE) -> SSHFailure:
        """Classify a failed call.

        Any exit code other than 255 comes from the remote command, so the
        transport is known to have worked.
        """
        if exit_code != SSH_TRANSPORT_EXIT_CODE:
            return SSHFailure(kind=SSHFailureKind.REMOTE_COMMAND)

        for kind, pattern, name in self._patterns:
            if pattern.search(stderr or ""):
                return SSHFailure(kind=kind, matched_pattern=name, hint=_HINTS.get(kind, ""))

        return SSHFailure(kind=SSHFailureKind.UNKNOWN)


_instance: SSHErrorClassifier | None = None


def get_ssh_error_classifier() -> SSHErrorClassifier:
    """Get the shared classifier."""
    global _instance
    if _instance is None:
        _instance = SSHErrorClassifier()
    return _instance
