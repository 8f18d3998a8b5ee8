"""Tests for FailoverController.

Tests cover:
- MASTER is published only after the VIP is bound and verified
- Bind failure keeps the prior role; unbind failure never keeps MASTER
- Binding reconciliation (VIP_MISSING / VIP_STRAY)
- Split-brain detection is logged once per episode and resolved
- Master listeners, notify command, shutdown step-down, loop lifecycle
"""

from __future__ import annotations

import logging
import threading
import time
from unittest.mock import patch

import pytest

from dnsha.core import HealthStatus, NodeRole
from dnsha.ha.controller import FailoverController
from dnsha.ha.fsm import FailoverFSM, TransitionReason
from dnsha.ha.role import IdentityCell, NodeIdentity
from dnsha.ha.vip import InMemoryBinder
from dnsha.observability.metrics import get_ha_metrics
from dnsha.peer.messages import PeerState

VIP = "192.168.1.200/24"


class Harness:
    """Controller with mutable local health and peer view."""

    def __init__(
        self,
        clock,
        *,
        node_id: str = "dns-a",
        priority: int = 100,
        binder: InMemoryBinder | None = None,
        **kwargs,
    ) -> None:
        self.clock = clock
        self.peer_id = "dns-b" if node_id != "dns-b" else "dns-a"
        self.health: HealthStatus | None = HealthStatus.HEALTHY
        self.peer = PeerState()
        self.identity = IdentityCell(NodeIdentity(node_id, priority=priority))
        self.binder = binder or InMemoryBinder(node_id)
        self.controller = FailoverController(
            self.identity,
            FailoverFSM(node_id, priority, liveness_timeout_s=3.0),
            self.binder,
            VIP,
            health_fn=lambda: self.health,
            peer_fn=lambda now: self.peer,
            clock=clock,
            monotonic=clock,
            **kwargs,
        )

    def set_peer(self, role: NodeRole, health: HealthStatus = HealthStatus.HEALTHY, priority: int = 90) -> None:
        self.peer = PeerState(self.peer_id, role, health, priority, self.clock(), 1, "p")

    def make_master(self) -> None:
        self.set_peer(NodeRole.BACKUP)
        event = self.controller.step()
        assert event is not None
        assert self.controller.role == NodeRole.MASTER


def _messages(caplog: pytest.LogCaptureFixture) -> list[str]:
    return [r.getMessage() for r in caplog.records]


class TestBecomeMaster:
    """Tests for the bind-then-publish order."""

    def test_takeover_after_observation(self, clock) -> None:
        """Test INIT claims MASTER after a silent observation window."""
        h = Harness(clock)
        assert h.controller.step() is None
        assert h.controller.role == NodeRole.INIT
        clock.advance(3.0)
        event = h.controller.step()
        assert event is not None
        assert event.reason == TransitionReason.PEER_UNREACHABLE
        assert h.controller.role == NodeRole.MASTER
        assert h.binder.is_bound(VIP)
        assert h.identity.get().last_transition_time == clock.now
        metrics = get_ha_metrics()
        assert metrics.role == NodeRole.MASTER
        assert metrics.vip_bound == 1

    def test_bind_failure_keeps_role(self, clock, caplog: pytest.LogCaptureFixture) -> None:
        """Test a failed bind leaves the node in its prior role and retries."""
        h = Harness(clock)
        h.set_peer(NodeRole.BACKUP)
        h.binder.fail_bind = True
        with caplog.at_level(logging.INFO, logger="dnsha.ha.controller"):
            assert h.controller.step() is None
        assert h.controller.role == NodeRole.INIT
        assert "VIP_BIND_FAILED" in _messages(caplog)
        assert "FAILOVER_TRANSITION" not in _messages(caplog)
        assert get_ha_metrics().vip_failures == {"bind": 1}

        h.binder.fail_bind = False
        assert h.controller.step() is not None
        assert h.controller.role == NodeRole.MASTER

    def test_unverified_bind_keeps_role(self, clock) -> None:
        """Test a bind that does not show up on the interface is a failure."""

        class SilentBinder(InMemoryBinder):
            def bind(self, address: str) -> None:
                pass

        h = Harness(clock, binder=SilentBinder("dns-a"))
        h.set_peer(NodeRole.BACKUP)
        assert h.controller.step() is None
        assert h.controller.role == NodeRole.INIT
        assert get_ha_metrics().vip_failures == {"verify": 1}

    def test_master_listener(self, clock, caplog: pytest.LogCaptureFixture) -> None:
        """Test listeners run after MASTER; a failing listener is logged only."""
        h = Harness(clock)
        calls: list[NodeRole] = []

        def broken() -> None:
            raise RuntimeError("listener bug")

        h.controller.add_master_listener(broken)
        h.controller.add_master_listener(lambda: calls.append(h.controller.role))
        with caplog.at_level(logging.ERROR, logger="dnsha.ha.controller"):
            h.make_master()
        assert calls == [NodeRole.MASTER]
        assert "Master listener failed" in _messages(caplog)

    def test_transition_log_fields(self, clock, caplog: pytest.LogCaptureFixture) -> None:
        """Test the structured transition entry."""
        h = Harness(clock)
        with caplog.at_level(logging.INFO, logger="dnsha.ha.controller"):
            h.make_master()
        record = next(r for r in caplog.records if r.getMessage() == "FAILOVER_TRANSITION")
        assert record.from_state == "INIT"
        assert record.to_state == "MASTER"
        assert record.reason == "PEER_NOT_MASTER"
        assert record.local_health == "HEALTHY"
        assert record.peer_role == "BACKUP"
        assert record.ts == clock.now


class TestLeaveMaster:
    """Tests for unbind-then-publish."""

    def test_fault_releases_vip(self, clock, caplog: pytest.LogCaptureFixture) -> None:
        """Test going FAULT unbinds first and logs at warning level."""
        h = Harness(clock)
        h.make_master()
        h.health = HealthStatus.UNHEALTHY
        with caplog.at_level(logging.INFO, logger="dnsha.ha.controller"):
            event = h.controller.step()
        assert event is not None
        assert event.to_role == NodeRole.FAULT
        assert not h.binder.is_bound(VIP)
        record = next(r for r in caplog.records if r.getMessage() == "FAILOVER_TRANSITION")
        assert record.levelno == logging.WARNING

    def test_unbind_failure_still_changes_role(self, clock, caplog: pytest.LogCaptureFixture) -> None:
        """Test a failed unbind never keeps the MASTER claim and is retried."""
        h = Harness(clock)
        h.make_master()
        h.health = HealthStatus.UNHEALTHY
        h.binder.fail_unbind = True
        with caplog.at_level(logging.INFO, logger="dnsha.ha.controller"):
            h.controller.step()
        assert h.controller.role == NodeRole.FAULT
        assert h.binder.is_bound(VIP)
        messages = _messages(caplog)
        assert "VIP_UNBIND_FAILED" in messages
        assert "VIP_STRAY" in messages

        h.binder.fail_unbind = False
        h.controller.step()
        assert not h.binder.is_bound(VIP)
        assert get_ha_metrics().vip_bound == 0


class TestReconcile:
    """Tests for binding reconciliation."""

    def test_vip_missing_rebound(self, clock, caplog: pytest.LogCaptureFixture) -> None:
        """Test a MASTER whose address vanished binds it again."""
        h = Harness(clock)
        h.make_master()
        h.binder.segment.detach(VIP, "dns-a")
        with caplog.at_level(logging.WARNING, logger="dnsha.ha.controller"):
            assert h.controller.step() is None
        assert "VIP_MISSING" in _messages(caplog)
        assert h.binder.is_bound(VIP)
        assert h.controller.role == NodeRole.MASTER

    def test_vip_missing_rebind_fails(self, clock) -> None:
        """Test a failed rebind is counted and retried without a role change."""
        h = Harness(clock)
        h.make_master()
        h.binder.segment.detach(VIP, "dns-a")
        h.binder.fail_bind = True
        h.controller.step()
        assert h.controller.role == NodeRole.MASTER
        assert get_ha_metrics().vip_failures == {"bind": 1}

    def test_vip_stray_released(self, clock, caplog: pytest.LogCaptureFixture) -> None:
        """Test a non-MASTER holding the address releases it."""
        h = Harness(clock, priority=50)
        h.set_peer(NodeRole.MASTER, priority=100)
        h.controller.step()
        assert h.controller.role == NodeRole.BACKUP
        h.binder.bind(VIP)
        with caplog.at_level(logging.WARNING, logger="dnsha.ha.controller"):
            h.controller.step()
        assert "VIP_STRAY" in _messages(caplog)
        assert not h.binder.is_bound(VIP)


class TestSplitBrain:
    """Tests for split-brain handling."""

    def test_loser_steps_down(self, clock, caplog: pytest.LogCaptureFixture) -> None:
        """Test the losing MASTER releases the VIP and becomes BACKUP."""
        h = Harness(clock, node_id="dns-b", priority=90)
        h.make_master()
        h.peer = PeerState("dns-a", NodeRole.MASTER, HealthStatus.HEALTHY, 100, clock(), 5, "a")
        with caplog.at_level(logging.INFO, logger="dnsha.ha.controller"):
            event = h.controller.step()
        assert event is not None
        assert (event.to_role, event.reason) == (NodeRole.BACKUP, TransitionReason.SPLIT_BRAIN)
        assert not h.binder.is_bound(VIP)
        detected = [r for r in caplog.records if r.getMessage() == "SPLIT_BRAIN_DETECTED"]
        assert len(detected) == 1
        assert detected[0].levelno == logging.CRITICAL
        assert detected[0].winner is False

    def test_winner_logs_once_per_episode(self, clock, caplog: pytest.LogCaptureFixture) -> None:
        """Test the winner keeps MASTER and reports each episode once."""
        h = Harness(clock)
        h.make_master()
        h.set_peer(NodeRole.MASTER)
        with caplog.at_level(logging.CRITICAL, logger="dnsha.ha.controller"):
            for _ in range(3):
                assert h.controller.step() is None
            h.set_peer(NodeRole.BACKUP)
            h.controller.step()
            h.set_peer(NodeRole.MASTER)
            h.controller.step()
        assert h.controller.role == NodeRole.MASTER
        assert _messages(caplog).count("SPLIT_BRAIN_DETECTED") == 2
        assert get_ha_metrics().split_brain_events == 2


class TestLifecycle:
    """Tests for notify, shutdown and the evaluation loop."""

    def test_notify_command(self, clock) -> None:
        """Test the notify hook runs with the new role and address."""
        h = Harness(clock, notify_command="/usr/local/bin/dnsha-notify")
        ran = threading.Event()
        with patch("dnsha.ha.controller.subprocess.run") as run:
            run.side_effect = lambda *a, **kw: ran.set() or run.return_value
            run.return_value.returncode = 0
            h.make_master()
            assert ran.wait(2.0)
        argv = run.call_args[0][0]
        assert argv == ["/usr/local/bin/dnsha-notify", "master", VIP]

    def test_stop_steps_down(self, clock) -> None:
        """Test stopping a MASTER releases the VIP and publishes FAULT."""
        h = Harness(clock)
        h.make_master()
        h.controller.stop()
        assert h.controller.role == NodeRole.FAULT
        assert not h.binder.is_bound(VIP)
        assert h.controller.last_event is not None
        assert h.controller.last_event.reason == TransitionReason.SHUTDOWN

    def test_stop_from_fault_no_event(self, clock) -> None:
        """Test stepping down from FAULT is a no-op."""
        h = Harness(clock)
        h.health = HealthStatus.UNHEALTHY
        h.controller.step()
        event = h.controller.last_event
        h.controller.stop()
        assert h.controller.last_event is event

    def test_loop(self) -> None:
        """Test the background loop drives transitions until stopped."""
        identity = IdentityCell(NodeIdentity("dns-a"))
        binder = InMemoryBinder("dns-a")
        peer = PeerState("dns-b", NodeRole.BACKUP, HealthStatus.HEALTHY, 90, time.monotonic(), 1, "b")
        controller = FailoverController(
            identity,
            FailoverFSM("dns-a", 100, liveness_timeout_s=3.0),
            binder,
            VIP,
            health_fn=lambda: HealthStatus.HEALTHY,
            peer_fn=lambda now: peer,
            interval_s=0.01,
        )
        controller.start()
        controller.start()
        try:
            for _ in range(200):
                if controller.role == NodeRole.MASTER:
                    break
                time.sleep(0.01)
            assert controller.role == NodeRole.MASTER
            assert controller.is_running
        finally:
            controller.stop()
        assert not controller.is_running
        assert controller.role == NodeRole.FAULT
        assert not binder.is_bound(VIP)
