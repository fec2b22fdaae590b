"""Tests for peer.py."""

from datetime import datetime, timezone

from runner_sync.models.peer import (
    Candidate,
    PeerRecord,
    TailscaleNodePayload,
    TailscaleStatusPayload,
)
from tests.factories import peer

STATUS_JSON = """
{
  "BackendState": "Running",
  "Self": {"ID": "n1", "HostName": "new", "DNSName": "new.tail1234.ts.net.",
           "TailscaleIPs": ["100.64.0.1", "fd7a:115c:a1e0::1"], "Online": true},
  "Peer": {
    "nodekey:abc": {
      "HostName": "old",
      "DNSName": "old.tail1234.ts.net.",
      "TailscaleIPs": ["fd7a:115c:a1e0::2", "100.64.0.2"],
      "Tags": ["tag:ci"],
      "Online": true,
      "Created": "2026-10-18T08:00:00Z",
      "LastSeen": "0001-01-01T00:00:00Z",
      "Capabilities": ["ignored"]
    }
  }
}
"""


class TestPayload:
    """Tests for the status wire models."""

    def test_parse_status(self):
        status = TailscaleStatusPayload.model_validate_json(STATUS_JSON)
        assert status.backend_state == "Running"
        assert status.self_node.hostname == "new"
        assert set(status.peers) == {"nodekey:abc"}

    def test_missing_fields_default(self):
        node = TailscaleNodePayload.model_validate({})
        assert node.tailscale_ips == []
        assert node.tags is None
        assert node.online is False


class TestPeerRecord:
    """Tests for PeerRecord."""

    def test_from_payload(self):
        """Key fills a missing ID, DNS trailing dot is dropped, zero times become None."""
        status = TailscaleStatusPayload.model_validate_json(STATUS_JSON)
        record = PeerRecord.from_payload("nodekey:abc", status.peers["nodekey:abc"])

        assert record.id == "nodekey:abc"
        assert record.dns_name == "old.tail1234.ts.net"
        assert record.tags == frozenset({"tag:ci"})
        assert record.created_at == datetime(2026, 10, 18, 8, tzinfo=timezone.utc)
        assert record.last_seen is None

    def test_primary_address_prefers_ipv4(self):
        record = PeerRecord(id="x", hostname="x", addresses=("fd7a:115c:a1e0::2", "100.64.0.2"))
        assert record.primary_address == "100.64.0.2"

    def test_primary_address_ipv6_only(self):
        record = PeerRecord(id="x", hostname="x", addresses=("fd7a:115c:a1e0::2",))
        assert record.primary_address == "fd7a:115c:a1e0::2"
        assert PeerRecord(id="x", hostname="x").primary_address is None

    def test_display_name_fallback(self):
        assert PeerRecord(id="n9", hostname="", dns_name="a.ts.net").display_name == "a.ts.net"
        assert PeerRecord(id="n9", hostname="").display_name == "n9"


class TestCandidate:
    """Tests for Candidate."""

    def test_ssh_target(self):
        candidate = Candidate(peer=peer("old", "100.64.0.2"))
        assert candidate.ssh_target == "100.64.0.2"
        assert candidate.evolve(remote_user="runner").ssh_target == "runner@100.64.0.2"

    def test_no_address(self):
        assert Candidate(peer=PeerRecord(id="x", hostname="x"), remote_user="root").ssh_target is None

    def test_order_not_compared(self):
        base = Candidate(peer=peer("old", "100.64.0.2"))
        assert base.evolve(order=3) == base
