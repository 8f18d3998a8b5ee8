"""Tests for the peer channel.

Tests cover:
- Heartbeat encode/decode and validation (size bound, versions, peer-only values)
- Duplicate / out-of-order / self / malformed heartbeats are dropped
- Peer restart (new boot_id) resets the sequence baseline; late datagrams from the old boot are dropped
- Liveness timeout -> stale-but-present PeerState
- Loopback and UDP transports
"""

from __future__ import annotations

import json
import logging
import time

import pytest

from dnsha.core import HealthStatus, NodeRole
from dnsha.errors import ProtocolError
from dnsha.observability.metrics import get_ha_metrics
from dnsha.peer.channel import HeartbeatPayload, PeerChannel
from dnsha.peer.messages import MAX_HEARTBEAT_BYTES, Heartbeat, PeerState
from dnsha.peer.transport import LoopbackTransport, UdpTransport


def _hb(
    seq: int,
    *,
    node_id: str = "dns-b",
    boot_id: str = "boot1",
    role: NodeRole = NodeRole.BACKUP,
    health: HealthStatus = HealthStatus.HEALTHY,
    priority: int = 90,
) -> bytes:
    return Heartbeat(node_id, boot_id, seq, role, priority, health, 1700000000.0).encode()


def _channel(clock, **kwargs) -> tuple[PeerChannel, LoopbackTransport]:
    local, remote = LoopbackTransport.pair()
    channel = PeerChannel(
        "dns-a",
        local,
        heartbeat_interval_s=1.0,
        liveness_timeout_s=3.0,
        clock=clock,
        wall_clock=clock,
        boot_id="self-boot",
        **kwargs,
    )
    return channel, remote


class TestHeartbeat:
    """Tests for the heartbeat wire message."""

    def test_roundtrip(self) -> None:
        """Test encode/decode preserves every field."""
        hb = Heartbeat("dns-a", "b00t", 7, NodeRole.MASTER, 100, HealthStatus.DEGRADED, 12.5)
        assert Heartbeat.decode(hb.encode()) == hb

    def test_compact_and_bounded(self) -> None:
        """Test the datagram is small and independent of anything but identity."""
        data = Heartbeat("dns-a", "b00t", 1, NodeRole.INIT, 100, HealthStatus.HEALTHY, 1.0).encode()
        assert len(data) < 200
        with pytest.raises(ProtocolError, match="too large"):
            Heartbeat("x" * MAX_HEARTBEAT_BYTES, "b", 1, NodeRole.INIT, 1, HealthStatus.HEALTHY, 1.0).encode()

    @pytest.mark.parametrize(
        "data",
        [
            b"not json",
            b"[]",
            json.dumps({"v": 2}).encode(),
            json.dumps({"v": 1, "node_id": "b", "boot_id": "x", "seq": 1, "role": "MASTER",
                        "priority": 90, "ts": 1.0}).encode(),
            json.dumps({"v": 1, "node_id": "b", "boot_id": "x", "seq": 1, "role": "UNKNOWN",
                        "priority": 90, "health": "HEALTHY", "ts": 1.0}).encode(),
            json.dumps({"v": 1, "node_id": "b", "boot_id": "x", "seq": 1, "role": "MASTER",
                        "priority": 90, "health": "UNREACHABLE", "ts": 1.0}).encode(),
            json.dumps({"v": 1, "node_id": "", "boot_id": "x", "seq": 1, "role": "MASTER",
                        "priority": 90, "health": "HEALTHY", "ts": 1.0}).encode(),
        ],
    )
    def test_decode_rejects(self, data: bytes) -> None:
        """Test malformed, unknown-version and peer-only values are rejected."""
        with pytest.raises(ProtocolError):
            Heartbeat.decode(data)


class TestPeerState:
    """Tests for PeerState."""

    def test_initial_is_unreachable(self) -> None:
        """Test a never-seen peer is UNKNOWN / UNREACHABLE."""
        state = PeerState()
        assert state.never_seen
        assert not state.reachable
        assert state.silent_for(100.0) is None

    def test_stale_keeps_identity(self) -> None:
        """Test the stale view keeps node id and priority."""
        state = PeerState("dns-b", NodeRole.MASTER, HealthStatus.HEALTHY, 90, 5.0, 3, "b")
        stale = state.as_stale()
        assert stale.peer_role == NodeRole.UNKNOWN
        assert stale.peer_health == HealthStatus.UNREACHABLE
        assert (stale.peer_node_id, stale.peer_priority, stale.last_seen_time) == ("dns-b", 90, 5.0)


class TestPeerChannelReceive:
    """Tests for PeerChannel.receive and liveness."""

    def test_accepts_and_publishes(self, clock) -> None:
        """Test an accepted heartbeat becomes the current PeerState."""
        channel, _ = _channel(clock)
        assert channel.receive(_hb(1, role=NodeRole.MASTER))
        state = channel.current_peer_state()
        assert state.peer_node_id == "dns-b"
        assert state.peer_role == NodeRole.MASTER
        assert state.peer_priority == 90
        assert state.reachable
        assert get_ha_metrics().heartbeats_received == 1
        assert get_ha_metrics().peer_reachable == 1

    def test_duplicate_and_out_of_order_dropped(self, clock) -> None:
        """Test stale sequences never modify PeerState."""
        channel, _ = _channel(clock)
        channel.receive(_hb(5, role=NodeRole.MASTER))
        assert not channel.receive(_hb(5, role=NodeRole.FAULT))
        assert not channel.receive(_hb(3, role=NodeRole.FAULT))
        assert channel.current_peer_state().peer_role == NodeRole.MASTER
        assert channel.current_peer_state().sequence == 5
        dropped = get_ha_metrics().heartbeats_dropped
        assert dropped == {"duplicate": 1, "out_of_order": 1}

    def test_malformed_and_self_dropped(self, clock) -> None:
        """Test garbage and our own echoes are discarded."""
        channel, _ = _channel(clock)
        assert not channel.receive(b"\x00garbage")
        assert not channel.receive(_hb(1, node_id="dns-a", boot_id="self-boot"))
        assert channel.current_peer_state().never_seen
        assert get_ha_metrics().heartbeats_dropped == {"malformed": 1, "self": 1}

    def test_duplicate_node_id_logged(self, clock, caplog: pytest.LogCaptureFixture) -> None:
        """Test a foreign process using our node_id is reported."""
        channel, _ = _channel(clock)
        with caplog.at_level(logging.ERROR, logger="dnsha.peer.channel"):
            channel.receive(_hb(1, node_id="dns-a", boot_id="other-boot"))
        assert any(r.getMessage() == "DUPLICATE_NODE_ID" for r in caplog.records)

    def test_restart_resets_sequence(self, clock, caplog: pytest.LogCaptureFixture) -> None:
        """Test a new boot_id is accepted even with a lower sequence."""
        channel, _ = _channel(clock)
        channel.receive(_hb(40, role=NodeRole.MASTER))
        with caplog.at_level(logging.INFO, logger="dnsha.peer.channel"):
            assert channel.receive(_hb(1, boot_id="boot2", role=NodeRole.INIT))
        state = channel.current_peer_state()
        assert (state.boot_id, state.sequence, state.peer_role) == ("boot2", 1, NodeRole.INIT)
        assert any(r.getMessage() == "PEER_RESTARTED" for r in caplog.records)

    def test_delayed_heartbeat_from_previous_boot_dropped(self, clock) -> None:
        """Test a late datagram from before the restart cannot roll PeerState back."""
        channel, _ = _channel(clock)
        channel.receive(_hb(40, role=NodeRole.MASTER))
        assert channel.receive(_hb(1, boot_id="boot2", role=NodeRole.BACKUP))

        assert not channel.receive(_hb(41, role=NodeRole.MASTER))
        state = channel.current_peer_state()
        assert (state.boot_id, state.sequence, state.peer_role) == ("boot2", 1, NodeRole.BACKUP)
        assert get_ha_metrics().heartbeats_dropped == {"stale_boot": 1}

        # The new boot's own sequence keeps advancing normally
        assert channel.receive(_hb(2, boot_id="boot2", role=NodeRole.MASTER))
        assert channel.current_peer_state().sequence == 2

    def test_liveness_timeout(self, clock, caplog: pytest.LogCaptureFixture) -> None:
        """Test silence beyond the timeout yields the stale view, and recovery."""
        channel, _ = _channel(clock)
        channel.receive(_hb(1, role=NodeRole.MASTER))
        clock.advance(3.0)
        assert channel.current_peer_state().reachable  # exactly at the timeout
        clock.advance(0.1)
        with caplog.at_level(logging.INFO, logger="dnsha.peer.channel"):
            assert not channel.check_liveness()
            state = channel.current_peer_state()
            assert state.peer_role == NodeRole.UNKNOWN
            assert state.peer_node_id == "dns-b"
            channel.receive(_hb(2, role=NodeRole.MASTER))
        messages = [r.getMessage() for r in caplog.records]
        assert messages == ["PEER_UNREACHABLE", "PEER_REACHABLE"]
        assert channel.current_peer_state().peer_role == NodeRole.MASTER


class TestPeerChannelSend:
    """Tests for heartbeat sending."""

    def test_send_increments_sequence(self, clock) -> None:
        """Test each heartbeat carries the next sequence number and our boot_id."""
        channel, remote = _channel(clock)
        payload = HeartbeatPayload(NodeRole.BACKUP, 90, HealthStatus.HEALTHY)
        assert channel.send_heartbeat(payload)
        assert channel.send_heartbeat(payload)
        first = Heartbeat.decode(remote.recv_nowait())
        second = Heartbeat.decode(remote.recv_nowait())
        assert (first.sequence, second.sequence) == (1, 2)
        assert first.boot_id == "self-boot"
        assert first.role == NodeRole.BACKUP
        assert get_ha_metrics().heartbeats_sent == 2

    def test_send_failure_counted(self, clock) -> None:
        """Test transport errors are counted, never raised."""

        class BrokenTransport(LoopbackTransport):
            def send(self, data: bytes) -> None:
                raise OSError("network unreachable")

        channel = PeerChannel("dns-a", BrokenTransport(), clock=clock)
        assert not channel.send_heartbeat(HeartbeatPayload(NodeRole.INIT, 100, HealthStatus.HEALTHY))
        assert get_ha_metrics().heartbeat_send_errors == 1

    def test_threads_exchange_heartbeats(self) -> None:
        """Test two running channels see each other."""
        ta, tb = LoopbackTransport.pair()
        a = PeerChannel("dns-a", ta, heartbeat_interval_s=0.02,
                        payload_fn=lambda: HeartbeatPayload(NodeRole.MASTER, 100, HealthStatus.HEALTHY))
        b = PeerChannel("dns-b", tb, heartbeat_interval_s=0.02,
                        payload_fn=lambda: HeartbeatPayload(NodeRole.BACKUP, 90, HealthStatus.HEALTHY))
        a.start()
        b.start()
        try:
            for _ in range(200):
                if a.current_peer_state().reachable and b.current_peer_state().reachable:
                    break
                time.sleep(0.01)
            assert a.current_peer_state().peer_role == NodeRole.BACKUP
            assert b.current_peer_state().peer_role == NodeRole.MASTER
        finally:
            a.stop()
            b.stop()


class TestTransports:
    """Tests for datagram transports."""

    def test_loopback_partition(self) -> None:
        """Test link_up=False drops datagrams in that direction only."""
        a, b = LoopbackTransport.pair()
        a.link_up = False
        a.send(b"lost")
        b.send(b"kept")
        assert b.recv(0.01) is None
        assert a.recv(0.01) == b"kept"
        assert a.sent == 1

    def test_udp_roundtrip(self) -> None:
        """Test two UDP transports on localhost exchange a datagram."""
        a = UdpTransport("127.0.0.1", 0, "127.0.0.1")
        b = UdpTransport("127.0.0.1", 0, "127.0.0.1", a.local_port)
        try:
            b.send(b"hello")
            assert a.recv(1.0) == b"hello"
            assert a.recv(0.01) is None
        finally:
            a.close()
            b.close()
