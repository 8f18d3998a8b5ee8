"""Core types and enums for DNSHA."""

from enum import Enum


class NodeRole(Enum):
    """Failover role of a node.

    UNKNOWN is never held by a node itself; it is what the peer view
    reports once the peer has gone silent for longer than the liveness timeout.
    """

    INIT = "INIT"  # Starting up, observing the peer
    MASTER = "MASTER"  # Owns the virtual address
    BACKUP = "BACKUP"  # Healthy, standing by
    FAULT = "FAULT"  # Local health is UNHEALTHY
    UNKNOWN = "UNKNOWN"  # Peer view only: stale peer


class HealthStatus(Enum):
    """Composite health verdict.

    UNREACHABLE is peer view only, like NodeRole.UNKNOWN.
    """

    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"  # Non-critical check failing
    UNHEALTHY = "UNHEALTHY"  # Critical check failing
    UNREACHABLE = "UNREACHABLE"  # Peer view only: stale peer

    @property
    def can_serve(self) -> bool:
        """HEALTHY and DEGRADED nodes may hold the virtual address."""
        return self in (HealthStatus.HEALTHY, HealthStatus.DEGRADED)


# Roles a node may advertise about itself
SELF_ROLES = frozenset({NodeRole.INIT, NodeRole.MASTER, NodeRole.BACKUP, NodeRole.FAULT})
