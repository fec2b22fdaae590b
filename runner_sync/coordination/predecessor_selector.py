"""Predecessor discovery.

Picks the one peer this runner takes over from:

1. List online peers from the directory and resolve the tag filter.
2. Drop ourselves (any shared address), tag mismatches and offline peers.
3. Probe the survivors over SSH, at most ``probe_concurrency`` at a time.
4. Check each reachable peer for working data. The metadata record the
   peer wrote at startup is authoritative; without one, conventional CI
   work directories are searched.
5. Of the peers holding data, the most recently registered one wins. Ties
   go to the peer listed first by the directory.

Finding nothing is normal (first runner of a rotation) and returns None.
Per-peer failures only downgrade that peer.

Usage:
    from runner_sync.coordination.predecessor_selector import PredecessorSelector

    selector = PredecessorSelector(config, directory, executor)
    predecessor = await selector.select()
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone

from runner_sync.config.handoff_config import RUNNER_DATA_DIR, HandoffConfig
from runner_sync.core.error_handler import DirectoryUnavailable
from runner_sync.execution.ssh_executor import SSHExecutor
from runner_sync.models.peer import Candidate, PeerRecord
from runner_sync.models.runner_metadata import RemoteMetadata
from runner_sync.providers.tailscale_directory import (
    TailscaleDirectory,
    normalize_tags,
    peer_matches_tags,
)
from runner_sync.utils.exceptions import PARSE_ERRORS

logger = logging.getLogger(__name__)

__all__ = [
    "Discovery",
    "PredecessorSelector",
    "RemoteIdentity",
    "choose_predecessor",
    "filter_peers",
    "identities_from_users",
    "remote_path",
]

WORK_DIR_SEARCH_DEPTH = 4

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class RemoteIdentity:
    """One account to try on a peer."""

    user: str

    def target(self, host: str) -> str:
        return f"{self.user}@{host}"


def identities_from_users(users: Iterable[str]) -> tuple[RemoteIdentity, ...]:
    return tuple(RemoteIdentity(user) for user in users)


def remote_path(path: str) -> str:
    """Shell-quote a remote path, keeping a leading ``~/`` expandable."""
    if path == "~":
        return '"$HOME"'
    if path.startswith("~/"):
        return '"$HOME"/' + shlex.quote(path[2:])
    return shlex.quote(path)


def filter_peers(
    peers: Sequence[PeerRecord],
    self_addresses: frozenset[str],
    tags: tuple[str, ...],
) -> list[PeerRecord]:
    """Peers that are online, not us, and carry a filter tag."""
    survivors = []
    for peer in peers:
        if not peer.online:
            continue
        if peer.address_set & self_addresses:
            logger.debug(f"Skipping self: {peer.display_name}")
            continue
        if not peer_matches_tags(peer, tags):
            logger.debug(f"Skipping {peer.display_name}: tags {sorted(peer.tags)} do not match {list(tags)}")
            continue
        survivors.append(peer)
    return survivors


def _registered_at(candidate: Candidate) -> datetime:
    created = candidate.peer.created_at
    if created is None:
        return _OLDEST
    if created.tzinfo is None:
        return created.replace(tzinfo=timezone.utc)
    return created


def choose_predecessor(candidates: Iterable[Candidate]) -> Candidate | None:
    """Most recently registered eligible candidate; ties go to the lowest order."""
    best: Candidate | None = None
    for candidate in sorted(candidates, key=lambda c: c.order):
        if not (candidate.reachable and candidate.has_working_data):
            continue
        if best is None or _registered_at(candidate) > _registered_at(best):
            best = candidate
    return best


@dataclass
class Discovery:
    """Everything learned during one discovery pass."""

    peers_listed: int = 0
    candidates: list[Candidate] = field(default_factory=list)
    selected: Candidate | None = None

    @property
    def reachable(self) -> list[Candidate]:
        return [c for c in self.candidates if c.reachable]


class PredecessorSelector:
    """Finds the predecessor runner on the tailnet."""

    def __init__(
        self,
        config: HandoffConfig,
        directory: TailscaleDirectory,
        executor: SSHExecutor,
        identities: Sequence[RemoteIdentity] | None = None,
    ):
        self.config = config
        self.directory = directory
        self.executor = executor
        self.identities = tuple(identities) if identities is not None else identities_from_users(config.remote_users)
        self._semaphore = asyncio.Semaphore(config.probe_concurrency)

    # =========================================================================
    # Per-peer checks
    # =========================================================================

    async def _find_identity(self, host: str) -> RemoteIdentity | None:
        """First identity, top-down, that answers the probe."""
        for identity in self.identities:
            if await self.executor.probe(identity.target(host)):
                return identity
        return None

    async def fetch_metadata(self, host: str) -> tuple[RemoteIdentity, RemoteMetadata] | None:
        """Read the peer's metadata record, trying each identity in order."""
        command = f"cat {remote_path(self.config.metadata_path)} 2>/dev/null"
        for identity in self.identities:
            raw = await self.executor.capture(identity.target(host), command)
            if not raw:
                continue
            try:
                return identity, RemoteMetadata.model_validate_json(raw)
            except PARSE_ERRORS as e:
                logger.debug(f"[{host}] unreadable metadata as {identity.user}: {e}")
        return None

    async def _directory_exists(self, target: str, path: str) -> bool:
        quoted = remote_path(path)
        out = await self.executor.capture(target, f"test -d {quoted} && echo exists || echo not_found")
        return out == "exists"

    async def probe_work_dirs(self, target: str) -> str | None:
        """Search the first existing conventional work dir for the data directory."""
        for work_dir in self.config.work_dir_candidates:
            if not await self._directory_exists(target, work_dir):
                continue
            found = await self.executor.capture(
                target,
                f"find {remote_path(work_dir)} -maxdepth {WORK_DIR_SEARCH_DEPTH} "
                f"-type d -name {shlex.quote(RUNNER_DATA_DIR)} -print -quit 2>/dev/null",
            )
            return found.splitlines()[0].strip() if found else None
        return None

    async def evaluate(self, peer: PeerRecord, order: int = 0) -> Candidate:
        """Build the candidate for one peer. Never raises."""
        candidate = Candidate(peer=peer, order=order)
        host = peer.primary_address
        if host is None:
            return candidate

        identity = await self._find_identity(host)
        if identity is None:
            logger.info(f"Peer {peer.display_name} ({host}) is not reachable over SSH")
            return candidate
        candidate = candidate.evolve(reachable=True, remote_user=identity.user)

        found = await self.fetch_metadata(host)
        if found is not None:
            meta_identity, metadata = found
            path = metadata.working_data_path
            has_data = await self._directory_exists(meta_identity.target(host), path)
            logger.info(
                f"Peer {peer.display_name}: metadata says data at {path} "
                f"({'present' if has_data else 'missing'})"
            )
            return candidate.evolve(
                remote_metadata=metadata,
                remote_user=meta_identity.user,
                remote_data_path=path,
                has_working_data=has_data,
            )

        path = await self.probe_work_dirs(identity.target(host))
        if path:
            logger.info(f"Peer {peer.display_name}: found data at {path} by probing work dirs")
        return candidate.evolve(remote_data_path=path, has_working_data=bool(path))

    async def _evaluate_bounded(self, peer: PeerRecord, order: int) -> Candidate:
        async with self._semaphore:
            return await self.evaluate(peer, order)

    # =========================================================================
    # Selection
    # =========================================================================

    async def discover(self) -> Discovery:
        try:
            peers = await self.directory.list_peers()
        except DirectoryUnavailable as e:
            logger.warning(f"Peer directory unavailable, assuming no predecessor: {e.message}")
            return Discovery()

        self_addresses = await self.directory.self_addresses()
        tags = normalize_tags(self.config.tailscale_tags)
        survivors = filter_peers(peers, self_addresses, tags)
        logger.info(f"Found {len(survivors)} candidate peer(s) out of {len(peers)} online")

        candidates = list(await asyncio.gather(
            *(self._evaluate_bounded(peer, order) for order, peer in enumerate(survivors))
        ))
        selected = choose_predecessor(candidates)
        if selected is None:
            logger.info("No previous runner found")
        else:
            logger.info(f"Found previous runner: {selected.peer.display_name} ({selected.ssh_target})")
        return Discovery(peers_listed=len(peers), candidates=candidates, selected=selected)

    async def select(self) -> Candidate | None:
        return (await self.discover()).selected
