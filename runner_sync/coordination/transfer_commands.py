"""Argument builders for the data transfer tools.

Options are collected in frozen records and turned into argument lists by
``TransferCommandBuilder``, which rejects combinations the tools would
misinterpret instead of emitting them.

Usage:
    from runner_sync.coordination.transfer_commands import (
        RsyncOptions,
        TransferCommandBuilder,
        select_transfer_mode,
    )

    opts = RsyncOptions(
        source="runner@100.101.102.103:/home/runner/work/app/app/.runner-data/",
        destination="/home/runner/work/app/app/.runner-data/",
        mode=select_transfer_mode("100.101.102.103"),
    )
    command = TransferCommandBuilder.rsync(opts, timeout=600)
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from enum import Enum

from runner_sync.execution.ssh_executor import SSHOptions

__all__ = [
    "OVERLAY_NETWORKS",
    "RsyncOptions",
    "ScpOptions",
    "TransferCommand",
    "TransferCommandBuilder",
    "TransferMode",
    "is_overlay_address",
    "parse_rsync_transferred_bytes",
    "select_transfer_mode",
]

# Tailscale assigns from the CGNAT range and its own ULA prefix
OVERLAY_NETWORKS = (
    ipaddress.ip_network("100.64.0.0/10"),
    ipaddress.ip_network("fd7a:115c:a1e0::/48"),
)

_TRANSFERRED_RE = re.compile(r"Total transferred file size:\s*([\d,.]+)\s*bytes")


class TransferMode(Enum):
    """Wire compression mode. Exactly one applies to a transfer."""

    COMPRESSED = "compressed"
    UNCOMPRESSED = "uncompressed"


def _strip_user(host: str) -> str:
    host = host.rsplit("@", 1)[-1]
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host


def is_overlay_address(host: str) -> bool:
    """True when ``host`` (optionally ``user@``-prefixed) is a tailnet address."""
    try:
        address = ipaddress.ip_address(_strip_user(host))
    except ValueError:
        return False
    return any(address.version == net.version and address in net for net in OVERLAY_NETWORKS)


def select_transfer_mode(host: str) -> TransferMode:
    """Overlay links are already encrypted and usually local; skip compression there."""
    return TransferMode.UNCOMPRESSED if is_overlay_address(host) else TransferMode.COMPRESSED


def parse_rsync_transferred_bytes(output: str) -> int:
    """Extract "Total transferred file size" from ``rsync --stats`` output (0 if absent)."""
    match = _TRANSFERRED_RE.search(output or "")
    if not match:
        return 0
    digits = match.group(1).replace(",", "").split(".")[0]
    return int(digits) if digits else 0


@dataclass(frozen=True)
class RsyncOptions:
    """Options for one rsync mirror."""

    source: str
    destination: str
    mode: TransferMode = TransferMode.COMPRESSED
    delete: bool = True
    partial: bool = True
    stats: bool = True
    ssh: SSHOptions = field(default_factory=SSHOptions)
    ssh_path: str = "ssh"
    rsync_path: str = "rsync"


@dataclass(frozen=True)
class ScpOptions:
    """Options for one recursive scp copy."""

    source: str
    destination: str
    mode: TransferMode = TransferMode.COMPRESSED
    recursive: bool = True
    preserve_times: bool = True
    ssh: SSHOptions = field(default_factory=SSHOptions)
    scp_path: str = "scp"


@dataclass
class TransferCommand:
    """A ready-to-run transfer invocation."""

    args: list[str]
    timeout: float
    transport: str
    description: str = ""


class TransferCommandBuilder:
    """Builds validated argument lists for rsync and scp."""

    @staticmethod
    def _require_endpoints(source: str, destination: str) -> None:
        if not source or not destination:
            raise ValueError("source and destination are both required")

    @classmethod
    def rsync_args(cls, opts: RsyncOptions) -> list[str]:
        cls._require_endpoints(opts.source, opts.destination)
        # Without the trailing slash rsync nests the directory and --delete
        # would prune the wrong level
        if opts.delete and not opts.source.endswith("/"):
            raise ValueError("--delete mirroring needs a source ending in '/'")

        args = [opts.rsync_path, "-a"]
        if opts.mode == TransferMode.COMPRESSED:
            args.append("-z")
        if opts.delete:
            args.append("--delete")
        if opts.partial:
            args.append("--partial")
        if opts.stats:
            args.append("--stats")
        args += ["-e", opts.ssh.to_string(opts.ssh_path)]
        args += [opts.source, opts.destination]
        return args

    @classmethod
    def scp_args(cls, opts: ScpOptions) -> list[str]:
        cls._require_endpoints(opts.source, opts.destination)
        if not opts.recursive and opts.source.endswith("/"):
            raise ValueError("a directory source needs recursive=True")

        args = [opts.scp_path]
        if opts.recursive:
            args.append("-r")
        if opts.preserve_times:
            args.append("-p")
        if opts.mode == TransferMode.COMPRESSED:
            args.append("-C")
        args += opts.ssh.to_args()
        args += [opts.source, opts.destination]
        return args

    @classmethod
    def rsync(cls, opts: RsyncOptions, timeout: float) -> TransferCommand:
        return TransferCommand(
            args=cls.rsync_args(opts),
            timeout=timeout,
            transport="rsync",
            description=f"rsync {opts.source} -> {opts.destination}",
        )

    @classmethod
    def scp(cls, opts: ScpOptions, timeout: float) -> TransferCommand:
        return TransferCommand(
            args=cls.scp_args(opts),
            timeout=timeout,
            transport="scp",
            description=f"scp {opts.source} -> {opts.destination}",
        )
