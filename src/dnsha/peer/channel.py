"""Peer channel: heartbeat exchange and the freshest PeerState.

Safety rules:
- Heartbeats carry a per-sender sequence; duplicates and out-of-order
  messages are discarded without touching PeerState
- A new boot_id from the peer resets the sequence baseline (restart);
  datagrams still in flight from a retired boot_id are discarded
- Silence longer than liveness_timeout -> role UNKNOWN / health UNREACHABLE,
  but the last identity is kept (stale-but-present)
- No retries: a lost heartbeat is replaced by the next tick

PeerState has a single writer (the receive loop) and is published by
replacing an immutable object, so current_peer_state() never blocks.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING

from dnsha.core import HealthStatus, NodeRole
from dnsha.errors import ProtocolError
from dnsha.observability.metrics import HaMetrics, get_ha_metrics
from dnsha.peer.messages import Heartbeat, PeerState

if TYPE_CHECKING:
    from collections.abc import Callable

    from dnsha.peer.transport import HeartbeatTransport

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL_S = 1.0
RECV_POLL_S = 0.2
# Previous boot_ids remembered per channel; their late datagrams are dropped
RETIRED_BOOTS_KEPT = 4


@dataclass(frozen=True)
class HeartbeatPayload:
    """What the local node advertises: identity excerpt + latest verdict."""

    role: NodeRole
    priority: int
    health: HealthStatus


class PeerChannel:
    """Heartbeat session with the other node of the pair.

    Usage:
        channel = PeerChannel("dns-a", transport, payload_fn=node.heartbeat_payload)
        channel.start()   # sender + receiver threads
        state = channel.current_peer_state()
        channel.stop()
    """

    def __init__(
        self,
        node_id: str,
        transport: HeartbeatTransport,
        *,
        heartbeat_interval_s: float = DEFAULT_HEARTBEAT_INTERVAL_S,
        liveness_timeout_s: float | None = None,
        payload_fn: Callable[[], HeartbeatPayload | None] | None = None,
        clock: Callable[[], float] | None = None,
        wall_clock: Callable[[], float] | None = None,
        metrics: HaMetrics | None = None,
        boot_id: str | None = None,
    ) -> None:
        self._node_id = node_id
        self._transport = transport
        self._interval_s = heartbeat_interval_s
        self._liveness_s = (
            liveness_timeout_s if liveness_timeout_s is not None else 3 * heartbeat_interval_s
        )
        self._payload_fn = payload_fn
        self._clock = clock or time.monotonic
        self._wall_clock = wall_clock or time.time
        self._metrics = metrics or get_ha_metrics()
        self._boot_id = boot_id or uuid.uuid4().hex[:12]

        self._sequence = 0
        self._send_lock = threading.Lock()
        self._state = PeerState()
        self._reported_reachable = False
        self._retired_boots: deque[tuple[str, str]] = deque(maxlen=RETIRED_BOOTS_KEPT)

        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._is_running = False

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def boot_id(self) -> str:
        return self._boot_id

    @property
    def liveness_timeout_s(self) -> float:
        return self._liveness_s

    @property
    def is_running(self) -> bool:
        return self._is_running

    # ── sending ───────────────────────────────────────────────────────────

    def send_heartbeat(self, payload: HeartbeatPayload) -> bool:
        """Fire-and-forget send. Returns False if the transport failed."""
        with self._send_lock:
            self._sequence += 1
            hb = Heartbeat(
                node_id=self._node_id,
                boot_id=self._boot_id,
                sequence=self._sequence,
                role=payload.role,
                priority=payload.priority,
                health=payload.health,
                timestamp=self._wall_clock(),
            )
        try:
            self._transport.send(hb.encode())
        except (OSError, ProtocolError) as e:
            self._metrics.heartbeat_send_errors += 1
            logger.debug("Heartbeat send failed: %s", e)
            return False
        self._metrics.heartbeats_sent += 1
        return True

    # ── receiving ─────────────────────────────────────────────────────────

    def receive(self, data: bytes, now: float | None = None) -> bool:
        """Apply one datagram. Returns True if PeerState was updated."""
        now = self._clock() if now is None else now
        try:
            hb = Heartbeat.decode(data)
        except ProtocolError as e:
            self._metrics.record_heartbeat_dropped("malformed")
            logger.debug("Dropping malformed heartbeat: %s", e)
            return False

        if hb.node_id == self._node_id:
            self._metrics.record_heartbeat_dropped("self")
            if hb.boot_id != self._boot_id:
                logger.error(
                    "DUPLICATE_NODE_ID",
                    extra={
                        "component": "peer_channel",
                        "node_id": hb.node_id,
                        "peer_boot_id": hb.boot_id,
                    },
                )
            return False

        if (hb.node_id, hb.boot_id) in self._retired_boots:
            self._metrics.record_heartbeat_dropped("stale_boot")
            logger.debug("Dropping heartbeat from retired boot %s of %s", hb.boot_id, hb.node_id)
            return False

        current = self._state
        same_boot = current.boot_id == hb.boot_id and current.peer_node_id == hb.node_id
        if same_boot and hb.sequence <= current.sequence:
            reason = "duplicate" if hb.sequence == current.sequence else "out_of_order"
            self._metrics.record_heartbeat_dropped(reason)
            return False
        if current.boot_id is not None and not same_boot:
            if current.peer_node_id is not None:
                self._retired_boots.append((current.peer_node_id, current.boot_id))
            logger.info(
                "PEER_RESTARTED",
                extra={
                    "component": "peer_channel",
                    "peer_node_id": hb.node_id,
                    "old_boot_id": current.boot_id,
                    "new_boot_id": hb.boot_id,
                },
            )

        self._state = PeerState(
            peer_node_id=hb.node_id,
            peer_role=hb.role,
            peer_health=hb.health,
            peer_priority=hb.priority,
            last_seen_time=now,
            sequence=hb.sequence,
            boot_id=hb.boot_id,
        )
        self._metrics.heartbeats_received += 1
        self._note_reachability(True, hb.node_id)
        return True

    def current_peer_state(self, now: float | None = None) -> PeerState:
        """Last known peer view with the liveness rule applied. Never blocks."""
        state = self._state
        now = self._clock() if now is None else now
        silent = state.silent_for(now)
        if silent is None or silent > self._liveness_s:
            return state.as_stale()
        return state

    def check_liveness(self, now: float | None = None) -> bool:
        """Refresh reachability bookkeeping; returns current reachability."""
        state = self.current_peer_state(now)
        self._note_reachability(state.reachable, state.peer_node_id)
        return state.reachable

    def _note_reachability(self, reachable: bool, peer_node_id: str | None) -> None:
        self._metrics.peer_reachable = int(reachable)
        if reachable == self._reported_reachable:
            return
        self._reported_reachable = reachable
        if reachable:
            logger.info(
                "PEER_REACHABLE",
                extra={"component": "peer_channel", "peer_node_id": peer_node_id},
            )
        else:
            logger.warning(
                "PEER_UNREACHABLE",
                extra={
                    "component": "peer_channel",
                    "peer_node_id": peer_node_id,
                    "liveness_timeout_s": self._liveness_s,
                },
            )

    # ── loops ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start sender and receiver threads. Idempotent."""
        if self._is_running:
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._send_loop, name="peer-heartbeat-send", daemon=True),
            threading.Thread(target=self._recv_loop, name="peer-heartbeat-recv", daemon=True),
        ]
        for t in self._threads:
            t.start()
        self._is_running = True
        logger.info(
            "PeerChannel started",
            extra={
                "node_id": self._node_id,
                "boot_id": self._boot_id,
                "heartbeat_interval_s": self._interval_s,
                "liveness_timeout_s": self._liveness_s,
            },
        )

    def stop(self) -> None:
        if not self._is_running:
            return
        self._stop_event.set()
        for t in self._threads:
            t.join(timeout=5.0)
            if t.is_alive():
                logger.warning("PeerChannel thread %s did not stop within timeout", t.name)
        self._transport.close()
        self._is_running = False
        logger.info("PeerChannel stopped")

    def _send_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                payload = self._payload_fn() if self._payload_fn else None
                if payload is not None:
                    self.send_heartbeat(payload)
                self.check_liveness()
            except Exception:
                logger.exception("Error in heartbeat send loop")
            self._stop_event.wait(timeout=self._interval_s)

    def _recv_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                data = self._transport.recv(timeout=RECV_POLL_S)
                if data is not None:
                    self.receive(data)
            except OSError:
                if self._stop_event.is_set():
                    break
                logger.exception("Heartbeat receive failed")
                self._stop_event.wait(timeout=RECV_POLL_S)
            except Exception:
                logger.exception("Error in heartbeat receive loop")
