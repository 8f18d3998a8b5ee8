"""Node identity and its thread-safe publication.

The failover controller is the only writer; the replicator, the heartbeat
sender, health checks and the status server read snapshots.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from threading import Lock
from typing import Any

from dnsha.core import NodeRole


@dataclass(frozen=True)
class NodeIdentity:
    """Identity and role of this node.

    Attributes:
        node_id: Unique node id (hostname by default)
        role: Current role; every process starts in INIT
        priority: Static election priority, higher wins
        last_transition_time: Wall-clock time of the last role change
    """

    node_id: str
    role: NodeRole = NodeRole.INIT
    priority: int = 100
    last_transition_time: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "role": self.role.value,
            "priority": self.priority,
            "last_transition_time": self.last_transition_time,
        }


class IdentityCell:
    """Holds the current NodeIdentity; publish replaces it atomically."""

    def __init__(self, identity: NodeIdentity) -> None:
        self._lock = Lock()
        self._identity = identity

    def get(self) -> NodeIdentity:
        """Current identity (immutable snapshot)."""
        with self._lock:
            return self._identity

    @property
    def role(self) -> NodeRole:
        return self.get().role

    def publish(self, *, role: NodeRole, ts: float) -> NodeIdentity:
        """Set a new role. Only the failover controller calls this."""
        with self._lock:
            self._identity = replace(self._identity, role=role, last_transition_time=ts)
            return self._identity
