"""Heartbeat wire message and the peer view built from it.

Wire format: one UDP datagram of compact UTF-8 JSON, at most
MAX_HEARTBEAT_BYTES, independent of configuration tree size:

    {"v": 1, "node_id": "dns-a", "boot_id": "3f9c...", "seq": 42,
     "role": "MASTER", "priority": 100, "health": "HEALTHY", "ts": 1700000000.5}

boot_id is random per process start, so a restarted peer (whose sequence
starts again at 1) is recognised instead of being discarded as a replay.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from typing import Any

from dnsha.core import SELF_ROLES, HealthStatus, NodeRole
from dnsha.errors import ProtocolError

PROTOCOL_VERSION = 1
MAX_HEARTBEAT_BYTES = 512
_SELF_HEALTH = frozenset({HealthStatus.HEALTHY, HealthStatus.DEGRADED, HealthStatus.UNHEALTHY})


@dataclass(frozen=True)
class Heartbeat:
    """One heartbeat: identity excerpt + latest health verdict."""

    node_id: str
    boot_id: str
    sequence: int
    role: NodeRole
    priority: int
    health: HealthStatus
    timestamp: float

    def encode(self) -> bytes:
        data = json.dumps(
            {
                "v": PROTOCOL_VERSION,
                "node_id": self.node_id,
                "boot_id": self.boot_id,
                "seq": self.sequence,
                "role": self.role.value,
                "priority": self.priority,
                "health": self.health.value,
                "ts": round(self.timestamp, 3),
            },
            separators=(",", ":"),
        ).encode()
        if len(data) > MAX_HEARTBEAT_BYTES:
            raise ProtocolError(f"heartbeat too large: {len(data)} bytes")
        return data

    @classmethod
    def decode(cls, data: bytes) -> Heartbeat:
        """Parse a datagram.

        Raises:
            ProtocolError: Oversized, not JSON, wrong version or bad fields.
        """
        if len(data) > MAX_HEARTBEAT_BYTES:
            raise ProtocolError(f"heartbeat too large: {len(data)} bytes")
        try:
            raw: Any = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ProtocolError(f"heartbeat is not JSON: {e}") from None
        if not isinstance(raw, dict):
            raise ProtocolError("heartbeat must be a JSON object")
        if raw.get("v") != PROTOCOL_VERSION:
            raise ProtocolError(f"unsupported heartbeat version: {raw.get('v')!r}")
        try:
            hb = cls(
                node_id=str(raw["node_id"]),
                boot_id=str(raw["boot_id"]),
                sequence=int(raw["seq"]),
                role=NodeRole(raw["role"]),
                priority=int(raw["priority"]),
                health=HealthStatus(raw["health"]),
                timestamp=float(raw["ts"]),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ProtocolError(f"invalid heartbeat field: {e}") from None
        if hb.role not in SELF_ROLES or hb.health not in _SELF_HEALTH:
            raise ProtocolError(f"peer cannot advertise {hb.role.value}/{hb.health.value}")
        if not hb.node_id or hb.sequence < 0:
            raise ProtocolError("heartbeat node_id empty or sequence negative")
        return hb


@dataclass(frozen=True)
class PeerState:
    """Last known view of the peer.

    Attributes:
        peer_node_id: Peer id (None if never heard from)
        peer_role: Advertised role, UNKNOWN when stale
        peer_health: Advertised health, UNREACHABLE when stale
        peer_priority: Advertised priority (kept when stale)
        last_seen_time: Monotonic receive time of the last accepted heartbeat
        sequence: Last accepted sequence number
        boot_id: Peer process instance
    """

    peer_node_id: str | None = None
    peer_role: NodeRole = NodeRole.UNKNOWN
    peer_health: HealthStatus = HealthStatus.UNREACHABLE
    peer_priority: int | None = None
    last_seen_time: float | None = None
    sequence: int = -1
    boot_id: str | None = None

    @property
    def never_seen(self) -> bool:
        return self.last_seen_time is None

    @property
    def reachable(self) -> bool:
        return self.peer_health != HealthStatus.UNREACHABLE

    def silent_for(self, now: float) -> float | None:
        """Seconds since the last accepted heartbeat (None if never seen)."""
        if self.last_seen_time is None:
            return None
        return max(0.0, now - self.last_seen_time)

    def as_stale(self) -> PeerState:
        """Stale-but-present view: identity kept, role/health unknown."""
        return replace(self, peer_role=NodeRole.UNKNOWN, peer_health=HealthStatus.UNREACHABLE)

    def to_dict(self) -> dict[str, Any]:
        return {
            "peer_node_id": self.peer_node_id,
            "peer_role": self.peer_role.value,
            "peer_health": self.peer_health.value,
            "peer_priority": self.peer_priority,
            "never_seen": self.never_seen,
            "sequence": self.sequence,
        }
