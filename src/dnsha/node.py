"""HaNode: wires the four components of one node together.

Start order: probe, receiver, peer channel, failover controller, replicator,
status server. Stop order is the reverse, with one addition: after the
controller stepped down (VIP released, role FAULT) a final heartbeat tells
the peer to take over immediately instead of waiting for the liveness
timeout.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from dnsha.config import DEFAULT_PRIORITY_BY_ROLE, NodeConfig, load_config
from dnsha.core import HealthStatus, NodeRole
from dnsha.errors import ConfigError
from dnsha.ha.controller import FailoverController
from dnsha.ha.fsm import FailoverFSM
from dnsha.ha.role import IdentityCell, NodeIdentity
from dnsha.ha.vip import InMemoryBinder, IpRouteBinder, VipBinder
from dnsha.health.checks import build_checks
from dnsha.health.probe import HealthProbe
from dnsha.observability.metrics import HaMetrics, get_ha_metrics
from dnsha.observability.status import StatusServer
from dnsha.peer.channel import HeartbeatPayload, PeerChannel
from dnsha.peer.transport import HeartbeatTransport, UdpTransport
from dnsha.replication.manifest import normalize_roots
from dnsha.replication.receiver import ReplicationReceiver
from dnsha.replication.replicator import ConfigReplicator
from dnsha.replication.sender import ReplicationSender
from dnsha.replication.watcher import TreeWatcher

logger = logging.getLogger(__name__)


class HaNode:
    """One node of the HA pair.

    binder and transport may be injected (tests, simulations); otherwise they
    follow the config (dry_run -> InMemoryBinder, UDP heartbeats).
    """

    def __init__(
        self,
        config: NodeConfig,
        *,
        binder: VipBinder | None = None,
        transport: HeartbeatTransport | None = None,
        metrics: HaMetrics | None = None,
    ) -> None:
        self.config = config
        timing = config.timing
        self._metrics = metrics or get_ha_metrics()

        self.identity = IdentityCell(NodeIdentity(config.node_id, priority=config.priority))
        if binder is None:
            if config.dry_run:
                binder = InMemoryBinder(config.node_id)
            else:
                binder = IpRouteBinder(config.interface, gratuitous_arp=config.gratuitous_arp)
        self.binder = binder

        checks = build_checks(
            config.checks,
            default_timeout_s=timing.check_timeout_s,
            role_fn=lambda: self.identity.role,
            binder=self.binder,
            vip=config.virtual_address,
        )
        self.probe = HealthProbe(checks, interval_s=timing.probe_interval_s, metrics=self._metrics)

        if transport is None:
            transport = UdpTransport(
                config.listen_host,
                config.heartbeat_port,
                config.peer_address,
                send_timeout_s=timing.send_timeout_s,
            )
        self.channel = PeerChannel(
            config.node_id,
            transport,
            heartbeat_interval_s=timing.heartbeat_interval_s,
            liveness_timeout_s=timing.liveness_s,
            payload_fn=self.heartbeat_payload,
            metrics=self._metrics,
        )

        fsm = FailoverFSM(
            config.node_id,
            config.priority,
            liveness_timeout_s=timing.liveness_s,
            takeover_grace_s=timing.takeover_grace,
        )
        self.controller = FailoverController(
            self.identity,
            fsm,
            self.binder,
            config.virtual_address,
            health_fn=self._local_health,
            peer_fn=self.channel.current_peer_state,
            interval_s=timing.evaluation_s,
            notify_command=config.notify_command,
            metrics=self._metrics,
        )

        self.replicator: ConfigReplicator | None = None
        self.receiver: ReplicationReceiver | None = None
        if config.replication.enabled:
            roots = normalize_roots(config.replication.roots)
            sender = ReplicationSender(
                config.peer_address,
                config.replication.port,
                roots,
                node_id=config.node_id,
                boot_id=self.channel.boot_id,
                timeout_s=timing.transfer_timeout_s,
                max_file_bytes=config.replication.max_file_bytes,
            )
            self.replicator = ConfigReplicator(
                TreeWatcher(roots),
                sender,
                role_fn=lambda: self.identity.role,
                debounce_s=timing.debounce_s,
                metrics=self._metrics,
            )
            self.receiver = ReplicationReceiver(
                roots,
                host=config.replication.listen_host,
                port=config.replication.port,
                role_fn=lambda: self.identity.role,
                timeout_s=timing.transfer_timeout_s,
                max_file_bytes=config.replication.max_file_bytes,
                metrics=self._metrics,
            )
            self.controller.add_master_listener(self.replicator.request_full_resync)

        self.status_server: StatusServer | None = None
        if config.status_port:
            self.status_server = StatusServer(
                "0.0.0.0",
                config.status_port,
                role_fn=lambda: self.identity.role,
                bound_fn=lambda: self.binder.is_bound(config.virtual_address),
                status_fn=self.status,
                metrics=self._metrics,
            )

        self._started = False

    @property
    def role(self) -> NodeRole:
        return self.identity.role

    def _local_health(self) -> HealthStatus | None:
        verdict = self.probe.latest()
        return verdict.overall if verdict else None

    def heartbeat_payload(self) -> HeartbeatPayload | None:
        """What the channel advertises; None until the first verdict exists."""
        health = self._local_health()
        if health is None:
            return None
        identity = self.identity.get()
        return HeartbeatPayload(role=identity.role, priority=identity.priority, health=health)

    def status(self) -> dict[str, Any]:
        """JSON-friendly snapshot for /status and `dnsha status`."""
        verdict = self.probe.latest()
        last = self.controller.last_event
        try:
            vip_bound: bool | None = self.binder.is_bound(self.config.virtual_address)
        except Exception:
            logger.exception("VIP query failed while building status")
            vip_bound = None
        snapshot: dict[str, Any] = {
            "identity": self.identity.get().to_dict(),
            "virtual_address": self.config.virtual_address,
            "vip_bound": vip_bound,
            "health": verdict.to_dict() if verdict else None,
            "peer": self.channel.current_peer_state().to_dict(),
            "last_transition": (
                {
                    "from_role": last.from_role.value,
                    "to_role": last.to_role.value,
                    "reason": last.reason.value,
                    "ts": last.ts,
                }
                if last
                else None
            ),
            "replication": None,
        }
        if self.replicator is not None:
            stats = self.replicator.stats
            snapshot["replication"] = {
                "generation": self.replicator.generation,
                "pending": len(self.replicator.pending),
                "pushes_ok": stats.pushes_ok,
                "pushes_failed": stats.pushes_failed,
                "pushes_rejected": stats.pushes_rejected,
                "last_error": stats.last_error,
            }
        return snapshot

    # ── lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._started:
            return
        logger.info(
            "NODE_STARTING",
            extra={
                "node_id": self.config.node_id,
                "priority": self.config.priority,
                "virtual_address": self.config.virtual_address,
                "peer_address": self.config.peer_address,
                "dry_run": self.config.dry_run,
            },
        )
        self.probe.start()
        if self.receiver is not None:
            self.receiver.start()
        self.channel.start()
        self.controller.start()
        if self.replicator is not None:
            self.replicator.start()
        if self.status_server is not None:
            self.status_server.start()
        self._started = True

    def stop(self) -> None:
        """Graceful stop; releases the VIP if held."""
        if not self._started:
            return
        if self.status_server is not None:
            self.status_server.stop()
        if self.replicator is not None:
            self.replicator.stop()
        self.controller.stop()
        payload = self.heartbeat_payload()
        if payload is not None:
            self.channel.send_heartbeat(payload)
        self.channel.stop()
        if self.receiver is not None:
            self.receiver.stop()
        self.probe.stop()
        self._started = False
        logger.info("NODE_STOPPED", extra={"node_id": self.config.node_id, "ts": time.time()})


def configure(
    role: str,
    virtual_address: str,
    interface: str,
    peer_address: str,
    priority: int | None = None,
    *,
    config_path: str | None = None,
    start: bool = True,
    **overrides: Any,
) -> HaNode:
    """Build (and by default start) a node.

    role ("master", "slave" or "backup") only selects the default priority;
    every node still starts in INIT and is elected like any other.

    Raises:
        ConfigError: Unknown role or invalid configuration.
    """
    role_key = role.strip().lower()
    if role_key not in DEFAULT_PRIORITY_BY_ROLE:
        raise ConfigError(f"unknown role {role!r} (allowed: {sorted(DEFAULT_PRIORITY_BY_ROLE)})")
    if priority is None:
        priority = DEFAULT_PRIORITY_BY_ROLE[role_key]
    config = load_config(
        config_path,
        virtual_address=virtual_address,
        interface=interface,
        peer_address=peer_address,
        priority=priority,
        **overrides,
    )
    node = HaNode(config)
    if start:
        node.start()
    return node
