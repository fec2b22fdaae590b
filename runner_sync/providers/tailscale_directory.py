"""Tailscale peer directory.

The overlay network is treated as an opaque directory service: every
question about peers is answered by parsing ``tailscale status --json``
through the wire models in ``runner_sync.models.peer``. This module is the
only place that knows the dump's layout, so the directory source can be
swapped without touching the selector.

Also owns joining the overlay (install + ``tailscale up``) and leaving it.

Usage:
    from runner_sync.providers.tailscale_directory import TailscaleDirectory

    directory = TailscaleDirectory(config)
    peers = await directory.list_peers()          # online peers only
    me = await directory.self_addresses()         # frozenset of overlay IPs
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass

from runner_sync.config.handoff_config import HandoffConfig
from runner_sync.core.error_handler import DirectoryUnavailable, NetworkError, ProcessError
from runner_sync.models.peer import PeerRecord, TailscaleStatusPayload
from runner_sync.utils.async_utils import (
    SubprocessTimeoutError,
    async_subprocess_run,
    command_exists,
)
from runner_sync.utils.exceptions import PARSE_ERRORS, PROCESS_ERRORS

logger = logging.getLogger(__name__)

__all__ = [
    "TailscaleDirectory",
    "JoinResult",
    "normalize_tags",
    "peer_matches_tags",
]

TAG_PREFIX = "tag:"
STATUS_TIMEOUT = 10.0
UP_TIMEOUT = 60.0
INSTALL_TIMEOUT = 300.0
STATUS_POLL_INTERVAL = 1.0
INSTALL_SCRIPT_URL = "https://tailscale.com/install.sh"


def normalize_tags(raw: str | list[str] | tuple[str, ...] | None) -> tuple[str, ...]:
    """Split a comma-separated tag filter and prefix each tag with ``tag:``.

    >>> normalize_tags("ci, tag:deploy,,")
    ('tag:ci', 'tag:deploy')
    """
    if raw is None:
        return ()
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    tags: list[str] = []
    for item in items:
        tag = str(item).strip()
        if not tag:
            continue
        if not tag.startswith(TAG_PREFIX):
            tag = TAG_PREFIX + tag
        if tag not in tags:
            tags.append(tag)
    return tuple(tags)


def peer_matches_tags(peer: PeerRecord, tags: tuple[str, ...]) -> bool:
    """A peer matches when it carries any filter tag. An empty filter matches all."""
    if not tags:
        return True
    peer_tags = {t if t.startswith(TAG_PREFIX) else TAG_PREFIX + t for t in peer.tags}
    return any(tag in peer_tags for tag in tags)


@dataclass
class JoinResult:
    """Outcome of joining the overlay."""
    ip: str | None
    hostname: str | None


class TailscaleDirectory:
    """Peer directory backed by the ``tailscale`` CLI."""

    def __init__(self, config: HandoffConfig, executable: str = "tailscale"):
        self._config = config
        self._executable = executable

    # =========================================================================
    # Status queries
    # =========================================================================

    async def _query_status(self) -> TailscaleStatusPayload:
        """Run ``tailscale status --json`` and parse it.

        Raises:
            DirectoryUnavailable: CLI missing, non-zero exit, timeout, or bad JSON.
        """
        try:
            result = await async_subprocess_run(
                [self._executable, "status", "--json"],
                timeout=STATUS_TIMEOUT,
            )
        except SubprocessTimeoutError:
            raise DirectoryUnavailable(f"tailscale status timed out after {STATUS_TIMEOUT}s")
        except FileNotFoundError:
            raise DirectoryUnavailable("tailscale CLI not found")
        except PROCESS_ERRORS as e:
            raise DirectoryUnavailable(f"tailscale status could not run: {e}")

        if not result.success:
            raise DirectoryUnavailable(
                f"tailscale status failed with exit code {result.returncode}: {result.stderr.strip()}"
            )

        try:
            return TailscaleStatusPayload.model_validate(json.loads(result.stdout))
        except PARSE_ERRORS as e:
            raise DirectoryUnavailable(f"Failed to parse tailscale status JSON: {e}")

    async def status(self) -> TailscaleStatusPayload | None:
        """Status dump, or None when the directory cannot be queried. Never raises."""
        try:
            return await self._query_status()
        except DirectoryUnavailable as e:
            logger.debug(f"Tailscale status unavailable: {e.message}")
            return None

    async def is_running(self) -> bool:
        status = await self.status()
        return status is not None and status.backend_state == "Running"

    async def self_ipv4(self) -> str | None:
        status = await self.status()
        if status is None or status.self_node is None:
            return None
        return next((ip for ip in status.self_node.tailscale_ips if ":" not in ip), None)

    async def self_dns_name(self) -> str | None:
        status = await self.status()
        if status is None or status.self_node is None:
            return None
        return status.self_node.dns_name.rstrip(".") or None

    async def self_addresses(self) -> frozenset[str]:
        """Every overlay address of the local node (empty when unknown)."""
        status = await self.status()
        if status is None or status.self_node is None:
            return frozenset()
        return frozenset(status.self_node.tailscale_ips)

    async def list_peers(self) -> list[PeerRecord]:
        """Online peers in directory order.

        Raises:
            DirectoryUnavailable: When the backend cannot be queried.
        """
        status = await self._query_status()
        peers = [
            PeerRecord.from_payload(key, payload)
            for key, payload in status.peers.items()
        ]
        online = [peer for peer in peers if peer.online]
        logger.debug(f"Directory lists {len(peers)} peers, {len(online)} online")
        return online

    # =========================================================================
    # Joining / leaving
    # =========================================================================

    def _sudo(self, args: list[str]) -> list[str]:
        return args if self._config.is_windows else ["sudo", *args]

    async def install(self) -> bool:
        """Install the CLI when missing. Only Linux can be auto-installed."""
        if command_exists(self._executable):
            try:
                version = await async_subprocess_run([self._executable, "version"], timeout=STATUS_TIMEOUT)
                if version.success and version.stdout:
                    logger.info(f"Tailscale already installed: {version.stdout.splitlines()[0]}")
            except PROCESS_ERRORS as e:
                logger.debug(f"tailscale version failed: {e}")
            return True

        if not self._config.is_linux:
            if self._config.is_windows:
                logger.error("Windows detected. Download from: https://tailscale.com/download/windows")
            elif self._config.platform == "darwin":
                logger.error("macOS detected. Install via: brew install tailscale")
            else:
                logger.error("Unsupported OS for auto-install")
            return False

        logger.info("Installing Tailscale...")
        try:
            await async_subprocess_run(
                ["sh", "-c", f"curl -fsSL {INSTALL_SCRIPT_URL} | sh"],
                timeout=INSTALL_TIMEOUT,
                check=True,
            )
        except PROCESS_ERRORS as e:
            raise ProcessError(f"Tailscale install failed: {e}")

        try:
            await async_subprocess_run(
                self._sudo(["systemctl", "enable", "--now", "tailscaled"]),
                timeout=STATUS_TIMEOUT * 3,
            )
        except PROCESS_ERRORS as e:
            logger.warning(f"Could not enable tailscaled (ignored): {e}")

        logger.info("Tailscale installed on Linux")
        return True

    def _up_command(self, tags: tuple[str, ...]) -> list[str]:
        args = [
            self._executable,
            "up",
            "--auth-stdin",
            "--accept-routes",
            "--accept-dns=true",
        ]
        if self._config.is_linux:
            args.append("--ssh")
        if tags:
            args.append(f"--advertise-tags={','.join(tags)}")
        return self._sudo(args)

    async def wait_until_running(self, timeout: float, interval: float = STATUS_POLL_INTERVAL) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if await self.is_running():
                return True
            await asyncio.sleep(interval)
        return False

    async def join(self) -> JoinResult:
        """Install if needed, log in with the OAuth client, and wait for the backend.

        Raises:
            ProcessError: The CLI cannot be installed or ``tailscale up`` fails.
            NetworkError: The backend never reaches the Running state.
        """
        logger.info("Connecting to Tailscale network...")
        if not await self.install():
            raise ProcessError(
                "Failed to install Tailscale",
                hint="Install Tailscale manually and make sure `tailscale` is on PATH.",
            )

        tags = normalize_tags(self._config.tailscale_tags)
        logger.info("Logging in to Tailscale with OAuth client...")
        try:
            result = await async_subprocess_run(
                self._up_command(tags),
                timeout=UP_TIMEOUT,
                input_text=f"{self._config.tailscale_client_id}\n{self._config.tailscale_client_secret}\n",
            )
        except PROCESS_ERRORS as e:
            raise ProcessError(f"tailscale up could not run: {e}")
        if not result.success:
            raise ProcessError(
                f"tailscale up failed with code {result.returncode}: {result.stderr.strip()}",
                hint="Check TAILSCALE_CLIENT_ID / TAILSCALE_CLIENT_SECRET and that the tags are owned by the OAuth client.",
            )

        logger.info("Waiting for Tailscale connection...")
        if not await self.wait_until_running(self._config.join_timeout):
            raise NetworkError(f"Tailscale failed to connect after {self._config.join_timeout:.0f}s")

        joined = JoinResult(ip=await self.self_ipv4(), hostname=await self.self_dns_name())
        logger.info(f"Connected to Tailscale: {joined.ip or joined.hostname}")
        return joined

    async def leave(self) -> None:
        """Best-effort ``tailscale down`` + ``logout``."""
        logger.info("Cleaning up Tailscale...")
        for sub in ("down", "logout"):
            try:
                result = await async_subprocess_run(self._sudo([self._executable, sub]), timeout=STATUS_TIMEOUT)
                if not result.success:
                    logger.warning(f"tailscale {sub} failed (ignored): {result.stderr.strip()}")
            except PROCESS_ERRORS as e:
                logger.warning(f"tailscale {sub} failed (ignored): {e}")
