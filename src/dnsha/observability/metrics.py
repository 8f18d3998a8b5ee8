"""HA metrics for the Prometheus /metrics endpoint.

Design:
- Plain dataclass singleton (get_ha_metrics / reset_ha_metrics)
- Thread-safe via simple dict/int operations (GIL-protected); each counter
  has a single writer component
- No external dependencies, rendered to Prometheus text by hand
- One-hot role gauge derived from NodeRole
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from dnsha.core import SELF_ROLES, HealthStatus, NodeRole

if TYPE_CHECKING:
    from dnsha.ha.fsm import TransitionEvent
    from dnsha.health.types import HealthVerdict

# Metric names (stable contract)
METRIC_ROLE = "dnsha_role"
METRIC_TRANSITIONS = "dnsha_transitions_total"
METRIC_HEALTH = "dnsha_health_status"
METRIC_CHECK_PASSED = "dnsha_check_passed"
METRIC_PEER_REACHABLE = "dnsha_peer_reachable"
METRIC_HEARTBEATS_SENT = "dnsha_heartbeats_sent_total"
METRIC_HEARTBEAT_SEND_ERRORS = "dnsha_heartbeat_send_errors_total"
METRIC_HEARTBEATS_RECEIVED = "dnsha_heartbeats_received_total"
METRIC_HEARTBEATS_DROPPED = "dnsha_heartbeats_dropped_total"
METRIC_VIP_BOUND = "dnsha_vip_bound"
METRIC_VIP_FAILURES = "dnsha_vip_failures_total"
METRIC_SPLIT_BRAIN = "dnsha_split_brain_events_total"
METRIC_PUSHES = "dnsha_replication_pushes_total"
METRIC_FILES_SENT = "dnsha_replication_files_sent_total"
METRIC_GENERATION = "dnsha_replication_generation"
METRIC_FILES_APPLIED = "dnsha_replication_files_applied_total"


@dataclass
class HaMetrics:
    """Metrics collector for one DNSHA node.

    Attributes:
        role: Current role (None before the controller publishes one)
        transitions: {(from_role, to_role, reason): count}
        health: Last published local verdict
        checks: {check_name: 1 passed / 0 failed}
        peer_reachable: 1 if the peer is within the liveness timeout
        heartbeats_dropped: {reason: count} (duplicate, out_of_order, stale_boot, malformed, self)
        vip_failures: {op: count} (bind, unbind, verify)
        pushes: {result: count} (ok, failed, rejected)
    """

    role: NodeRole | None = None
    transitions: dict[tuple[str, str, str], int] = field(default_factory=dict)
    health: HealthStatus | None = None
    checks: dict[str, int] = field(default_factory=dict)
    peer_reachable: int = 0
    heartbeats_sent: int = 0
    heartbeat_send_errors: int = 0
    heartbeats_received: int = 0
    heartbeats_dropped: dict[str, int] = field(default_factory=dict)
    vip_bound: int = 0
    vip_failures: dict[str, int] = field(default_factory=dict)
    split_brain_events: int = 0
    pushes: dict[str, int] = field(default_factory=dict)
    files_sent: int = 0
    generation: int = 0
    files_applied: int = 0

    def record_transition(self, event: TransitionEvent) -> None:
        key = (event.from_role.value, event.to_role.value, event.reason.value)
        self.transitions[key] = self.transitions.get(key, 0) + 1
        self.role = event.to_role

    def record_verdict(self, verdict: HealthVerdict) -> None:
        self.health = verdict.overall
        self.checks = {r.name: int(r.passed) for r in verdict.results}

    def record_heartbeat_dropped(self, reason: str) -> None:
        self.heartbeats_dropped[reason] = self.heartbeats_dropped.get(reason, 0) + 1

    def record_vip_failure(self, op: str) -> None:
        self.vip_failures[op] = self.vip_failures.get(op, 0) + 1

    def record_push(self, result: str, files: int = 0, generation: int | None = None) -> None:
        self.pushes[result] = self.pushes.get(result, 0) + 1
        self.files_sent += files
        if generation is not None:
            self.generation = generation

    def to_prometheus_lines(self) -> list[str]:
        """Generate Prometheus text format lines."""
        lines: list[str] = [
            f"# HELP {METRIC_ROLE} Current failover role (1=current, 0=other)",
            f"# TYPE {METRIC_ROLE} gauge",
        ]
        for role in NodeRole:
            if role not in SELF_ROLES:
                continue
            value = 1 if role == self.role else 0
            lines.append(f'{METRIC_ROLE}{{role="{role.value}"}} {value}')

        lines.extend(
            [
                f"# HELP {METRIC_TRANSITIONS} Role transitions by from/to/reason",
                f"# TYPE {METRIC_TRANSITIONS} counter",
            ]
        )
        if self.transitions:
            for (from_r, to_r, reason), count in sorted(self.transitions.items()):
                lines.append(
                    f'{METRIC_TRANSITIONS}{{from_role="{from_r}",'
                    f'to_role="{to_r}",reason="{reason}"}} {count}'
                )
        else:
            lines.append(f'{METRIC_TRANSITIONS}{{from_role="none",to_role="none",reason="none"}} 0')

        lines.extend(
            [
                f"# HELP {METRIC_HEALTH} Local health verdict (1=current, 0=other)",
                f"# TYPE {METRIC_HEALTH} gauge",
            ]
        )
        for status in (HealthStatus.HEALTHY, HealthStatus.DEGRADED, HealthStatus.UNHEALTHY):
            value = 1 if status == self.health else 0
            lines.append(f'{METRIC_HEALTH}{{status="{status.value}"}} {value}')

        lines.extend(
            [
                f"# HELP {METRIC_CHECK_PASSED} Last result per health check (1=pass)",
                f"# TYPE {METRIC_CHECK_PASSED} gauge",
            ]
        )
        for name, passed in sorted(self.checks.items()):
            lines.append(f'{METRIC_CHECK_PASSED}{{check="{name}"}} {passed}')

        lines.extend(
            [
                f"# HELP {METRIC_PEER_REACHABLE} Peer heard within liveness timeout",
                f"# TYPE {METRIC_PEER_REACHABLE} gauge",
                f"{METRIC_PEER_REACHABLE} {self.peer_reachable}",
                f"# HELP {METRIC_HEARTBEATS_SENT} Heartbeats sent",
                f"# TYPE {METRIC_HEARTBEATS_SENT} counter",
                f"{METRIC_HEARTBEATS_SENT} {self.heartbeats_sent}",
                f"# HELP {METRIC_HEARTBEAT_SEND_ERRORS} Heartbeat send failures",
                f"# TYPE {METRIC_HEARTBEAT_SEND_ERRORS} counter",
                f"{METRIC_HEARTBEAT_SEND_ERRORS} {self.heartbeat_send_errors}",
                f"# HELP {METRIC_HEARTBEATS_RECEIVED} Heartbeats accepted from the peer",
                f"# TYPE {METRIC_HEARTBEATS_RECEIVED} counter",
                f"{METRIC_HEARTBEATS_RECEIVED} {self.heartbeats_received}",
                f"# HELP {METRIC_HEARTBEATS_DROPPED} Heartbeats discarded by reason",
                f"# TYPE {METRIC_HEARTBEATS_DROPPED} counter",
            ]
        )
        for reason, count in sorted(self.heartbeats_dropped.items()):
            lines.append(f'{METRIC_HEARTBEATS_DROPPED}{{reason="{reason}"}} {count}')

        lines.extend(
            [
                f"# HELP {METRIC_VIP_BOUND} Virtual address bound on this node",
                f"# TYPE {METRIC_VIP_BOUND} gauge",
                f"{METRIC_VIP_BOUND} {self.vip_bound}",
                f"# HELP {METRIC_VIP_FAILURES} Virtual address operation failures by op",
                f"# TYPE {METRIC_VIP_FAILURES} counter",
            ]
        )
        for op, count in sorted(self.vip_failures.items()):
            lines.append(f'{METRIC_VIP_FAILURES}{{op="{op}"}} {count}')

        lines.extend(
            [
                f"# HELP {METRIC_SPLIT_BRAIN} Split-brain detections",
                f"# TYPE {METRIC_SPLIT_BRAIN} counter",
                f"{METRIC_SPLIT_BRAIN} {self.split_brain_events}",
                f"# HELP {METRIC_PUSHES} Replication pushes by result",
                f"# TYPE {METRIC_PUSHES} counter",
            ]
        )
        for result, count in sorted(self.pushes.items()):
            lines.append(f'{METRIC_PUSHES}{{result="{result}"}} {count}')

        lines.extend(
            [
                f"# HELP {METRIC_FILES_SENT} Files transferred to the peer",
                f"# TYPE {METRIC_FILES_SENT} counter",
                f"{METRIC_FILES_SENT} {self.files_sent}",
                f"# HELP {METRIC_GENERATION} Last pushed replication generation",
                f"# TYPE {METRIC_GENERATION} gauge",
                f"{METRIC_GENERATION} {self.generation}",
                f"# HELP {METRIC_FILES_APPLIED} Files applied from peer pushes",
                f"# TYPE {METRIC_FILES_APPLIED} counter",
                f"{METRIC_FILES_APPLIED} {self.files_applied}",
            ]
        )
        return lines


# Global singleton
_metrics: HaMetrics | None = None


def get_ha_metrics() -> HaMetrics:
    """Get or create global HA metrics instance."""
    global _metrics  # noqa: PLW0603
    if _metrics is None:
        _metrics = HaMetrics()
    return _metrics


def reset_ha_metrics() -> None:
    """Reset HA metrics (for testing)."""
    global _metrics  # noqa: PLW0603
    _metrics = None
