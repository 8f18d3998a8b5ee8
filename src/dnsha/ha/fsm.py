"""Pure failover state machine.

Design constraints:
- Pure logic: no I/O, no logging, no metrics emission
- Deterministic: same inputs -> same (next_role, reason)
- Inputs are a frozen snapshot (FailoverInputs) taken once per cycle
- The caller (FailoverController) performs bind/unbind, publishes the role
  and logs; a proposed transition only takes effect once the caller commits it

Roles: INIT -> {MASTER | BACKUP} -> FAULT -> {MASTER | BACKUP}, plus
MASTER -> BACKUP when a split-brain is resolved against us. INIT only leaves
after the observation step (a heartbeat from the peer, or a full liveness
timeout of silence).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from dnsha.core import HealthStatus, NodeRole
from dnsha.peer.messages import PeerState


class TransitionReason(Enum):
    """Why the role changed. Every transition carries exactly one reason."""

    # -> FAULT
    LOCAL_UNHEALTHY = "LOCAL_UNHEALTHY"
    SHUTDOWN = "SHUTDOWN"

    # -> MASTER
    PEER_UNREACHABLE = "PEER_UNREACHABLE"
    PEER_UNHEALTHY = "PEER_UNHEALTHY"
    PEER_NOT_MASTER = "PEER_NOT_MASTER"
    PEER_LOWER_PRIORITY = "PEER_LOWER_PRIORITY"
    ELECTION_WON = "ELECTION_WON"
    TAKEOVER_GRACE_ELAPSED = "TAKEOVER_GRACE_ELAPSED"

    # -> BACKUP
    PEER_MASTER = "PEER_MASTER"
    SPLIT_BRAIN = "SPLIT_BRAIN"


@dataclass(frozen=True)
class TransitionEvent:
    """Immutable record of one role change."""

    ts: float
    from_role: NodeRole
    to_role: NodeRole
    reason: TransitionReason
    local_health: HealthStatus | None = None
    peer_role: NodeRole = NodeRole.UNKNOWN
    peer_health: HealthStatus = HealthStatus.UNREACHABLE


@dataclass(frozen=True)
class FailoverInputs:
    """One consistent snapshot evaluated per cycle.

    Attributes:
        ts: Wall-clock time of the snapshot
        role: Current role of this node
        local_health: Latest local verdict (None before the first probe)
        peer: Peer view with the liveness rule already applied
        peer_silent_s: Seconds since the last peer heartbeat (None = never)
        observed_s: Seconds this node has been observing since start
    """

    ts: float
    role: NodeRole
    local_health: HealthStatus | None
    peer: PeerState
    peer_silent_s: float | None
    observed_s: float


def wins_election(
    node_id: str,
    priority: int,
    peer_node_id: str | None,
    peer_priority: int | None,
) -> bool:
    """Deterministic, total tie-break between the two nodes.

    Higher priority wins; equal priority -> lexically smaller node_id wins.
    An unknown competitor loses. Both nodes compute the same winner.
    """
    if peer_node_id is None or peer_priority is None:
        return True
    if priority != peer_priority:
        return priority > peer_priority
    return node_id < peer_node_id


class FailoverFSM:
    """Role decision logic for one node.

    MUST:
    - Return a TransitionEvent for every proposed role change, else None
    - Be deterministic for a given FailoverInputs
    - Never leave INIT without an observation of the peer (or its absence)

    MUST NOT:
    - Perform I/O or hold references to live state
    """

    def __init__(
        self,
        node_id: str,
        priority: int,
        *,
        liveness_timeout_s: float,
        takeover_grace_s: float | None = None,
    ) -> None:
        self.node_id = node_id
        self.priority = priority
        self.liveness_timeout_s = liveness_timeout_s
        self.takeover_grace_s = (
            takeover_grace_s if takeover_grace_s is not None else 2 * liveness_timeout_s
        )

    def wins_against(self, peer: PeerState) -> bool:
        return wins_election(self.node_id, self.priority, peer.peer_node_id, peer.peer_priority)

    def split_brain(self, inputs: FailoverInputs) -> bool:
        """True if both this node and a live peer claim MASTER."""
        return (
            inputs.role == NodeRole.MASTER
            and inputs.peer.reachable
            and inputs.peer.peer_role == NodeRole.MASTER
        )

    def evaluate(self, inputs: FailoverInputs) -> TransitionEvent | None:
        """Propose the next role for this snapshot (None = stay)."""
        result = self._decide(inputs)
        if result is None:
            return None
        to_role, reason = result
        if to_role == inputs.role:
            return None
        return TransitionEvent(
            ts=inputs.ts,
            from_role=inputs.role,
            to_role=to_role,
            reason=reason,
            local_health=inputs.local_health,
            peer_role=inputs.peer.peer_role,
            peer_health=inputs.peer.peer_health,
        )

    def _decide(self, inputs: FailoverInputs) -> tuple[NodeRole, TransitionReason] | None:
        health = inputs.local_health
        if health is None:
            # No verdict yet: nothing to act on
            return None
        if not health.can_serve:
            return NodeRole.FAULT, TransitionReason.LOCAL_UNHEALTHY

        if inputs.role == NodeRole.INIT:
            return self._from_init(inputs)
        if inputs.role == NodeRole.MASTER:
            return self._from_master(inputs)
        if inputs.role == NodeRole.BACKUP:
            return self._from_backup(inputs)
        if inputs.role == NodeRole.FAULT:
            return self._from_fault(inputs)
        return None

    def _from_init(self, inputs: FailoverInputs) -> tuple[NodeRole, TransitionReason] | None:
        peer = inputs.peer
        if not peer.reachable:
            if peer.never_seen and inputs.observed_s < self.liveness_timeout_s:
                return None  # still observing
            return NodeRole.MASTER, TransitionReason.PEER_UNREACHABLE
        if peer.peer_health == HealthStatus.UNHEALTHY:
            return NodeRole.MASTER, TransitionReason.PEER_UNHEALTHY
        if peer.peer_role in (NodeRole.BACKUP, NodeRole.FAULT):
            return NodeRole.MASTER, TransitionReason.PEER_NOT_MASTER
        if peer.peer_role == NodeRole.MASTER:
            assert peer.peer_priority is not None
            if peer.peer_priority >= self.priority:
                return NodeRole.BACKUP, TransitionReason.PEER_MASTER
            return NodeRole.MASTER, TransitionReason.PEER_LOWER_PRIORITY
        if peer.peer_role == NodeRole.INIT and self.wins_against(peer):
            return NodeRole.MASTER, TransitionReason.ELECTION_WON
        return None

    def _from_master(self, inputs: FailoverInputs) -> tuple[NodeRole, TransitionReason] | None:
        peer = inputs.peer
        if (
            self.split_brain(inputs)
            and peer.peer_health.can_serve
            and not self.wins_against(peer)
        ):
            return NodeRole.BACKUP, TransitionReason.SPLIT_BRAIN
        return None

    def _from_backup(self, inputs: FailoverInputs) -> tuple[NodeRole, TransitionReason] | None:
        peer = inputs.peer
        if not peer.reachable:
            return NodeRole.MASTER, TransitionReason.PEER_UNREACHABLE
        if peer.peer_health == HealthStatus.UNHEALTHY:
            return NodeRole.MASTER, TransitionReason.PEER_UNHEALTHY
        if peer.peer_role == NodeRole.FAULT:
            return NodeRole.MASTER, TransitionReason.PEER_NOT_MASTER
        if peer.peer_role == NodeRole.BACKUP and self.wins_against(peer):
            return NodeRole.MASTER, TransitionReason.ELECTION_WON
        return None

    def _from_fault(self, inputs: FailoverInputs) -> tuple[NodeRole, TransitionReason] | None:
        peer = inputs.peer
        if peer.reachable:
            if peer.peer_health == HealthStatus.UNHEALTHY:
                return NodeRole.MASTER, TransitionReason.PEER_UNHEALTHY
            if peer.peer_role == NodeRole.MASTER:
                return NodeRole.BACKUP, TransitionReason.PEER_MASTER
            if peer.peer_role == NodeRole.BACKUP:
                return NodeRole.MASTER, TransitionReason.PEER_NOT_MASTER
            if peer.peer_role == NodeRole.FAULT and self.wins_against(peer):
                return NodeRole.MASTER, TransitionReason.ELECTION_WON
            # Peer INIT: it will claim MASTER on seeing us in FAULT
            return None

        if peer.never_seen and inputs.observed_s < self.liveness_timeout_s:
            return None  # faulted during startup, still observing
        # Both-down recovery with the peer silent: winner by last known identity
        if peer.never_seen or self.wins_against(peer):
            return NodeRole.MASTER, TransitionReason.PEER_UNREACHABLE
        silent = inputs.peer_silent_s
        if silent is not None and silent >= self.takeover_grace_s:
            return NodeRole.MASTER, TransitionReason.TAKEOVER_GRACE_ELAPSED
        return None
