"""Integration tests for config replication over localhost TCP.

A MASTER-side ConfigReplicator (real TreeWatcher + ReplicationSender) pushes
to a real ReplicationReceiver listening on an ephemeral port.

These tests verify:
- Full resync on becoming MASTER converges the peer tree
- Incremental create / modify / delete converge after one cycle
- Re-pushing an unchanged tree transfers nothing
- A receiver that is itself MASTER refuses, and the change is retried
- A BACKUP promoted by the failover controller mirrors its tree onto the
  divergent peer through the resync it requests
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from dnsha.core import HealthStatus, NodeRole
from dnsha.ha.controller import FailoverController
from dnsha.ha.fsm import FailoverFSM, TransitionReason
from dnsha.ha.role import IdentityCell, NodeIdentity
from dnsha.ha.vip import InMemoryBinder
from dnsha.peer.messages import PeerState
from dnsha.replication.manifest import build_manifest, list_dirs
from dnsha.replication.receiver import ReplicationReceiver
from dnsha.replication.replicator import ConfigReplicator
from dnsha.replication.sender import ReplicationSender
from dnsha.replication.watcher import TreeWatcher

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path

    from conftest import ManualClock

VIP = "192.168.1.200/24"


class Link:
    """Source roots on node A, replica roots on node B."""

    def __init__(self, tmp_path: Path) -> None:
        self.src = {"smartdns": tmp_path / "a" / "smartdns", "adguardhome": tmp_path / "a" / "adguardhome"}
        self.dst = {"smartdns": tmp_path / "b" / "smartdns", "adguardhome": tmp_path / "b" / "adguardhome"}
        for root in self.src.values():
            root.mkdir(parents=True)
        self.receiver_role = NodeRole.BACKUP
        self.receiver = ReplicationReceiver(
            self.dst, host="127.0.0.1", port=0, role_fn=lambda: self.receiver_role, timeout_s=5.0
        )

    def start(self) -> ConfigReplicator:
        self.receiver.start()
        sender = ReplicationSender(
            "127.0.0.1", self.receiver.port, self.src, node_id="dns-a", boot_id="boot-a", timeout_s=5.0
        )
        return ConfigReplicator(TreeWatcher(self.src), sender, role_fn=lambda: NodeRole.MASTER)

    def write(self, rel: str, text: str, mode: int = 0o644) -> None:
        alias, _, path = rel.partition("/")
        target = self.src[alias] / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text)
        target.chmod(mode)

    def converged(self) -> bool:
        return build_manifest(self.src) == build_manifest(self.dst) and list_dirs(self.src) == list_dirs(
            self.dst
        )


@pytest.fixture
def link(tmp_path: Path) -> Generator[Link, None, None]:
    link = Link(tmp_path)
    yield link
    link.receiver.stop()


class TestReplicationOverTcp:
    """End-to-end push sessions."""

    def test_full_resync_converges(self, link: Link) -> None:
        """Test a new MASTER's full resync mirrors the tree, extras removed."""
        link.write("smartdns/smartdns.conf", "bind :53\nserver 223.5.5.5\n")
        link.write("smartdns/conf.d/block.conf", "address /ads.example/#\n", 0o600)
        link.write("adguardhome/AdGuardHome.yaml", "dns:\n  port: 5353\n")
        stale = link.dst["smartdns"] / "old" / "removed.conf"
        stale.parent.mkdir(parents=True)
        stale.write_text("gone")

        replicator = link.start()
        replicator.request_full_resync()
        job = replicator.run_once()
        assert job is not None
        assert job.full
        assert link.converged()
        assert not (link.dst["smartdns"] / "old").exists()
        assert replicator.last_result is not None
        assert replicator.last_result.sent == 3
        assert replicator.last_result.deleted == 1

    def test_incremental_changes(self, link: Link) -> None:
        """Test create, modify and delete each converge in one cycle."""
        link.write("smartdns/smartdns.conf", "bind :53\n")
        link.write("smartdns/rules.conf", "rule 1\n")
        replicator = link.start()
        replicator.request_full_resync()
        replicator.run_once()
        assert link.converged()

        link.write("smartdns/smartdns.conf", "bind :53\nserver 1.1.1.1\n")
        link.write("smartdns/new.conf", "new\n")
        (link.src["smartdns"] / "rules.conf").unlink()
        (link.src["smartdns"] / ".smartdns.conf.swp").write_text("editor swap")
        job = replicator.run_once()
        assert job is not None
        assert job.change_set == {"smartdns/smartdns.conf", "smartdns/new.conf", "smartdns/rules.conf"}
        assert link.converged()
        assert not (link.dst["smartdns"] / ".smartdns.conf.swp").exists()
        assert replicator.generation == 2

    def test_unchanged_tree_transfers_nothing(self, link: Link) -> None:
        """Test pushing an identical tree again sends no file bodies."""
        link.write("smartdns/smartdns.conf", "bind :53\n")
        replicator = link.start()
        replicator.request_full_resync()
        replicator.run_once()
        assert replicator.run_once() is None

        replicator.request_full_resync()
        replicator.run_once()
        assert replicator.last_result is not None
        assert replicator.last_result.sent == 0
        assert replicator.last_result.applied == 0
        assert link.converged()

    def test_master_receiver_refuses_then_retry(self, link: Link) -> None:
        """Test a refused push keeps its changes for the next cycle."""
        link.write("smartdns/smartdns.conf", "bind :53\n")
        link.receiver_role = NodeRole.MASTER
        replicator = link.start()
        replicator.request_full_resync()
        assert replicator.run_once() is None
        assert replicator.stats.pushes_rejected == 1
        assert replicator.resync_requested
        assert not link.dst["smartdns"].exists()

        link.receiver_role = NodeRole.BACKUP
        assert replicator.run_once() is not None
        assert link.converged()


class TestPromotionResync:
    """Promotion by the failover controller drives a full resync to the peer."""

    def test_promoted_backup_converges_divergent_peer(self, link: Link, clock: ManualClock) -> None:
        """Test BACKUP -> MASTER makes the old MASTER's tree identical to ours."""
        link.write("smartdns/smartdns.conf", "bind :53\nserver 223.5.5.5\n")
        link.write("smartdns/conf.d/block.conf", "address /ads.example/#\n", 0o600)
        link.write("adguardhome/AdGuardHome.yaml", "dns:\n  port: 5353\n")
        (link.src["smartdns"] / "rules.d").mkdir()

        # The peer's tree drifted while it was MASTER
        drift = {
            "smartdns.conf": "bind :53\nserver 8.8.8.8\n",
            "conf.d/extra.conf": "stale\n",
            "old.d/legacy.conf": "legacy\n",
        }
        for rel, text in drift.items():
            target = link.dst["smartdns"] / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text)
        assert not link.converged()

        peer = [PeerState("dns-b", NodeRole.MASTER, HealthStatus.HEALTHY, 100, clock(), 1, "boot-b")]
        identity = IdentityCell(NodeIdentity("dns-a", priority=90))
        controller = FailoverController(
            identity,
            FailoverFSM("dns-a", 90, liveness_timeout_s=3.0),
            InMemoryBinder("dns-a"),
            VIP,
            health_fn=lambda: HealthStatus.HEALTHY,
            peer_fn=lambda now: peer[0],
            clock=clock,
            monotonic=clock,
        )
        link.receiver_role = NodeRole.MASTER
        link.receiver.start()
        sender = ReplicationSender(
            "127.0.0.1", link.receiver.port, link.src, node_id="dns-a", boot_id="boot-a", timeout_s=5.0
        )
        replicator = ConfigReplicator(TreeWatcher(link.src), sender, role_fn=lambda: identity.role)
        controller.add_master_listener(replicator.request_full_resync)

        controller.step()
        assert identity.role == NodeRole.BACKUP

        # Edits made while BACKUP are discarded, the resync still carries them
        link.write("smartdns/conf.d/block.conf", "address /ads.example/#\naddress /track.example/#\n", 0o600)
        assert replicator.run_once() is None
        assert replicator.stats.discarded_changes == 1

        # Peer fails: we take over and ask for a full resync
        clock.advance(1.0)
        link.receiver_role = NodeRole.FAULT
        peer[0] = PeerState("dns-b", NodeRole.FAULT, HealthStatus.UNHEALTHY, 100, clock(), 2, "boot-b")
        event = controller.step()
        assert event is not None
        assert event.reason == TransitionReason.PEER_UNHEALTHY
        assert identity.role == NodeRole.MASTER
        assert replicator.resync_requested

        job = replicator.run_once()
        assert job is not None
        assert job.full
        assert link.converged()
        for rel in ("smartdns.conf", "conf.d/block.conf"):
            assert (link.dst["smartdns"] / rel).read_bytes() == (link.src["smartdns"] / rel).read_bytes()
        assert (link.dst["smartdns"] / "rules.d").is_dir()
        assert not (link.dst["smartdns"] / "old.d").exists()
        assert not (link.dst["smartdns"] / "conf.d" / "extra.conf").exists()
        assert replicator.run_once() is None
