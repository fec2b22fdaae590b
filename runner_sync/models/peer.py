"""
Peer models for the overlay directory.

Pydantic wire models mirror the JSON emitted by ``tailscale status --json``
(PascalCase keys) and are converted once, at the adapter boundary, into the
immutable ``PeerRecord`` snapshots the rest of the package works with.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from runner_sync.models.runner_metadata import RemoteMetadata


class TailscaleNodePayload(BaseModel):
    """One node entry (``Self`` or a ``Peer`` value) of the status dump"""
    id: Optional[str] = Field(None, alias="ID")
    hostname: str = Field("", alias="HostName")
    dns_name: str = Field("", alias="DNSName")
    tailscale_ips: List[str] = Field(default_factory=list, alias="TailscaleIPs")
    tags: Optional[List[str]] = Field(None, alias="Tags")
    online: bool = Field(False, alias="Online")
    os: Optional[str] = Field(None, alias="OS")
    created: Optional[datetime] = Field(None, alias="Created")
    last_seen: Optional[datetime] = Field(None, alias="LastSeen")

    class Config:
        populate_by_name = True
        extra = "ignore"


class TailscaleStatusPayload(BaseModel):
    """Top-level ``tailscale status --json`` document"""
    backend_state: str = Field("", alias="BackendState")
    self_node: Optional[TailscaleNodePayload] = Field(None, alias="Self")
    peers: Dict[str, TailscaleNodePayload] = Field(default_factory=dict, alias="Peer")

    class Config:
        populate_by_name = True
        extra = "ignore"


def _real_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    # Tailscale reports "0001-01-01T00:00:00Z" for unknown times
    if value is None or value.year <= 1:
        return None
    return value


@dataclass(frozen=True)
class PeerRecord:
    """Immutable snapshot of one overlay peer."""

    id: str
    hostname: str
    dns_name: str = ""
    addresses: tuple[str, ...] = ()
    tags: frozenset[str] = frozenset()
    online: bool = False
    created_at: Optional[datetime] = None
    last_seen: Optional[datetime] = None

    @classmethod
    def from_payload(cls, key: str, payload: TailscaleNodePayload) -> PeerRecord:
        return cls(
            id=payload.id or key,
            hostname=payload.hostname,
            dns_name=payload.dns_name.rstrip("."),
            addresses=tuple(payload.tailscale_ips),
            tags=frozenset(payload.tags or ()),
            online=payload.online,
            created_at=_real_timestamp(payload.created),
            last_seen=_real_timestamp(payload.last_seen),
        )

    @property
    def address_set(self) -> frozenset[str]:
        return frozenset(self.addresses)

    @property
    def primary_address(self) -> Optional[str]:
        """First IPv4 address, else the first address of any family."""
        for address in self.addresses:
            if ":" not in address:
                return address
        return self.addresses[0] if self.addresses else None

    @property
    def display_name(self) -> str:
        return self.hostname or self.dns_name or self.id


@dataclass(frozen=True)
class Candidate:
    """A peer under evaluation as the predecessor.

    Built transiently during selection and discarded afterwards; the
    selected candidate is handed to the reconciler and quiescer.
    """

    peer: PeerRecord
    reachable: bool = False
    has_working_data: bool = False
    remote_metadata: Optional[RemoteMetadata] = None
    remote_user: Optional[str] = None
    remote_data_path: Optional[str] = None
    # Position in the directory listing, used as the tie-break
    order: int = field(default=0, compare=False)

    def evolve(self, **changes) -> Candidate:
        return replace(self, **changes)

    @property
    def host(self) -> Optional[str]:
        return self.peer.primary_address

    @property
    def ssh_target(self) -> Optional[str]:
        """``user@host`` used for remote commands and transfers."""
        host = self.host
        if host is None:
            return None
        if self.remote_user:
            return f"{self.remote_user}@{host}"
        return host
