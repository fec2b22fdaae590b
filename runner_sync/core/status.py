"""Read-only status report for ``runner-sync status``."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from runner_sync.config.handoff_config import HandoffConfig
from runner_sync.core.error_handler import DirectoryUnavailable
from runner_sync.core.workspace import directory_size
from runner_sync.models.peer import PeerRecord
from runner_sync.providers.tailscale_directory import (
    TailscaleDirectory,
    normalize_tags,
    peer_matches_tags,
)

logger = logging.getLogger(__name__)

__all__ = ["StatusReport", "collect_status", "log_status"]


@dataclass
class StatusReport:
    backend_state: str | None = None
    self_ip: str | None = None
    self_hostname: str | None = None
    tags: tuple[str, ...] = ()
    peers: list[PeerRecord] = field(default_factory=list)
    data_dir: str = ""
    data_dir_exists: bool = False
    data_size_bytes: int = 0

    @property
    def connected(self) -> bool:
        return self.backend_state == "Running"


async def collect_status(config: HandoffConfig, directory: TailscaleDirectory) -> StatusReport:
    report = StatusReport(
        tags=normalize_tags(config.tailscale_tags),
        data_dir=str(config.runner_data_dir),
    )

    status = await directory.status()
    if status is not None:
        report.backend_state = status.backend_state
        report.self_ip = await directory.self_ipv4()
        report.self_hostname = await directory.self_dns_name()
        if report.connected:
            try:
                peers = await directory.list_peers()
            except DirectoryUnavailable as e:
                logger.debug(f"Peer listing failed: {e.message}")
                peers = []
            self_addresses = await directory.self_addresses()
            report.peers = [
                p for p in peers
                if peer_matches_tags(p, report.tags) and not (p.address_set & self_addresses)
            ]

    data_dir = config.runner_data_dir
    if data_dir.is_dir():
        report.data_dir_exists = True
        report.data_size_bytes = directory_size(data_dir)
    return report


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def log_status(report: StatusReport, log: logging.Logger = logger) -> None:
    log.info("Tailscale:")
    if report.backend_state is None:
        log.info("  not available")
    else:
        log.info(f"  state: {report.backend_state}")
        log.info(f"  ip: {report.self_ip or '-'}")
        log.info(f"  hostname: {report.self_hostname or '-'}")
        log.info(f"Peers tagged {','.join(report.tags) or '(any)'}: {len(report.peers)}")
        for peer in report.peers:
            log.info(f"  {peer.display_name} {peer.primary_address or '-'}")
    log.info(f"Runner data: {report.data_dir}")
    if report.data_dir_exists:
        log.info(f"  size: {_human_size(report.data_size_bytes)}")
    else:
        log.info("  not created yet")
