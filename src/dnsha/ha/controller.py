"""Failover controller: runtime driver for FailoverFSM.

Thin glue that snapshots inputs, asks the FSM for a decision and performs
the side effects in a safe order:

- Entering MASTER: bind VIP, verify with is_bound, then publish MASTER and
  request a full config resync. If bind or verification fails the node keeps
  its prior role and retries on the next cycle.
- Leaving MASTER: unbind VIP first, then publish the new role. A failed
  unbind never keeps the MASTER claim; it is retried every cycle.
- Every cycle reconciles the binding with the published role.

Every transition and every binding failure produces one structured log entry.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from typing import TYPE_CHECKING

from dnsha.core import NodeRole
from dnsha.errors import VipError
from dnsha.ha.fsm import FailoverFSM, FailoverInputs, TransitionEvent, TransitionReason
from dnsha.observability.metrics import HaMetrics, get_ha_metrics

if TYPE_CHECKING:
    from collections.abc import Callable

    from dnsha.core import HealthStatus
    from dnsha.ha.role import IdentityCell
    from dnsha.ha.vip import VipBinder
    from dnsha.peer.messages import PeerState

logger = logging.getLogger(__name__)

NOTIFY_TIMEOUT_S = 10.0


class FailoverController:
    """Owns the node role and the virtual address binding.

    Usage:
        controller = FailoverController(identity, fsm, binder, "192.168.1.200/24",
                                        health_fn=..., peer_fn=...)
        controller.start()     # evaluation loop
        controller.step()      # or drive cycles manually (tests)
        controller.stop()      # releases the VIP if MASTER
    """

    def __init__(
        self,
        identity: IdentityCell,
        fsm: FailoverFSM,
        binder: VipBinder,
        address: str,
        *,
        health_fn: Callable[[], HealthStatus | None],
        peer_fn: Callable[[float], PeerState],
        interval_s: float = 2.0,
        notify_command: str | None = None,
        clock: Callable[[], float] | None = None,
        monotonic: Callable[[], float] | None = None,
        metrics: HaMetrics | None = None,
    ) -> None:
        self._identity = identity
        self._fsm = fsm
        self._binder = binder
        self._address = address
        self._health_fn = health_fn
        self._peer_fn = peer_fn
        self._interval_s = interval_s
        self._notify_command = notify_command
        self._clock = clock or time.time
        self._monotonic = monotonic or time.monotonic
        self._metrics = metrics or get_ha_metrics()

        self._master_listeners: list[Callable[[], None]] = []
        self._started_at = self._monotonic()
        self._split_brain_active = False
        self._last_event: TransitionEvent | None = None

        self._stop_event = threading.Event()
        self._loop_thread: threading.Thread | None = None
        self._is_running = False

    @property
    def role(self) -> NodeRole:
        return self._identity.role

    @property
    def address(self) -> str:
        return self._address

    @property
    def last_event(self) -> TransitionEvent | None:
        return self._last_event

    @property
    def is_running(self) -> bool:
        return self._is_running

    def add_master_listener(self, callback: Callable[[], None]) -> None:
        """Called after this node has become MASTER (VIP bound and verified)."""
        self._master_listeners.append(callback)

    # ── one cycle ─────────────────────────────────────────────────────────

    def snapshot(self) -> FailoverInputs:
        """Take one consistent snapshot of local health and peer state."""
        now = self._monotonic()
        peer = self._peer_fn(now)
        return FailoverInputs(
            ts=self._clock(),
            role=self._identity.role,
            local_health=self._health_fn(),
            peer=peer,
            peer_silent_s=peer.silent_for(now),
            observed_s=now - self._started_at,
        )

    def step(self) -> TransitionEvent | None:
        """Evaluate one cycle. Returns the committed transition, if any."""
        inputs = self.snapshot()
        self._watch_split_brain(inputs)

        committed: TransitionEvent | None = None
        event = self._fsm.evaluate(inputs)
        if event is not None:
            committed = self._apply(event)
        self._reconcile_binding()
        return committed

    def _watch_split_brain(self, inputs: FailoverInputs) -> None:
        detected = self._fsm.split_brain(inputs)
        if detected and not self._split_brain_active:
            self._metrics.split_brain_events += 1
            logger.critical(
                "SPLIT_BRAIN_DETECTED",
                extra={
                    "component": "failover",
                    "node_id": self._fsm.node_id,
                    "priority": self._fsm.priority,
                    "peer_node_id": inputs.peer.peer_node_id,
                    "peer_priority": inputs.peer.peer_priority,
                    "winner": self._fsm.wins_against(inputs.peer),
                    "ts": inputs.ts,
                },
            )
        self._split_brain_active = detected

    def _apply(self, event: TransitionEvent) -> TransitionEvent | None:
        if event.to_role == NodeRole.MASTER:
            try:
                self._bind_verified()
            except VipError as e:
                self._metrics.record_vip_failure(e.op)
                logger.error(
                    "VIP_BIND_FAILED",
                    extra={
                        "component": "failover",
                        "from_state": event.from_role.value,
                        "to_state": event.to_role.value,
                        "failure": str(e),
                        "ts": event.ts,
                    },
                )
                return None
            self._commit(event)
            self._notify_master_listeners()
            return event

        if event.from_role == NodeRole.MASTER:
            self._release()
        self._commit(event)
        return event

    def _bind_verified(self) -> None:
        self._binder.bind(self._address)
        if not self._binder.is_bound(self._address):
            raise VipError(self._address, "verify", "bind reported success but address is not bound")
        self._metrics.vip_bound = 1

    def _release(self) -> bool:
        """Unbind the VIP; failure is logged and retried by reconciliation."""
        try:
            self._binder.unbind(self._address)
        except VipError as e:
            self._metrics.record_vip_failure(e.op)
            logger.error(
                "VIP_UNBIND_FAILED",
                extra={"component": "failover", "failure": str(e), "ts": self._clock()},
            )
            return False
        self._metrics.vip_bound = 0
        return True

    def _commit(self, event: TransitionEvent) -> None:
        self._identity.publish(role=event.to_role, ts=event.ts)
        self._last_event = event
        self._metrics.record_transition(event)
        log = logger.warning if event.to_role == NodeRole.FAULT else logger.info
        if event.reason == TransitionReason.SPLIT_BRAIN:
            log = logger.critical
        log(
            "FAILOVER_TRANSITION",
            extra={
                "component": "failover",
                "from_state": event.from_role.value,
                "to_state": event.to_role.value,
                "reason": event.reason.value,
                "local_health": event.local_health.value if event.local_health else None,
                "peer_role": event.peer_role.value,
                "peer_health": event.peer_health.value,
                "ts": event.ts,
            },
        )
        self._run_notify(event.to_role)

    def _notify_master_listeners(self) -> None:
        for callback in self._master_listeners:
            try:
                callback()
            except Exception:
                logger.exception("Master listener failed")

    def _reconcile_binding(self) -> None:
        """Make the binding match the published role."""
        role = self._identity.role
        try:
            bound = self._binder.is_bound(self._address)
        except VipError as e:
            self._metrics.record_vip_failure(e.op)
            logger.error(
                "VIP_QUERY_FAILED",
                extra={"component": "failover", "failure": str(e), "ts": self._clock()},
            )
            return
        self._metrics.vip_bound = int(bound)

        if role == NodeRole.MASTER and not bound:
            logger.warning(
                "VIP_MISSING",
                extra={"component": "failover", "role": role.value, "address": self._address},
            )
            try:
                self._bind_verified()
            except VipError as e:
                self._metrics.record_vip_failure(e.op)
                logger.error(
                    "VIP_BIND_FAILED",
                    extra={"component": "failover", "failure": str(e), "ts": self._clock()},
                )
        elif role != NodeRole.MASTER and bound:
            logger.warning(
                "VIP_STRAY",
                extra={"component": "failover", "role": role.value, "address": self._address},
            )
            self._release()

    def _run_notify(self, role: NodeRole) -> None:
        if not self._notify_command:
            return
        argv = [self._notify_command, role.value.lower(), self._address]

        def _notify() -> None:
            try:
                result = subprocess.run(
                    argv, capture_output=True, text=True, timeout=NOTIFY_TIMEOUT_S, check=False
                )
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.warning("NOTIFY_FAILED", extra={"component": "failover", "failure": str(e)})
                return
            if result.returncode != 0:
                logger.warning(
                    "NOTIFY_FAILED",
                    extra={
                        "component": "failover",
                        "failure": f"exit {result.returncode}: {result.stderr.strip()}",
                    },
                )

        threading.Thread(target=_notify, name="failover-notify", daemon=True).start()

    # ── lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the evaluation loop. Idempotent."""
        if self._is_running:
            return
        self._started_at = self._monotonic()
        self._stop_event.clear()
        self._loop_thread = threading.Thread(
            target=self._evaluation_loop, name="failover-eval", daemon=True
        )
        self._loop_thread.start()
        self._is_running = True
        logger.info(
            "FailoverController started",
            extra={
                "node_id": self._fsm.node_id,
                "priority": self._fsm.priority,
                "address": self._address,
                "interval_s": self._interval_s,
            },
        )

    def stop(self) -> None:
        """Stop at the next cycle boundary, then step down.

        A MASTER releases the VIP and advertises FAULT so the peer can take
        over without waiting for the liveness timeout.
        """
        if self._is_running:
            self._stop_event.set()
            if self._loop_thread:
                self._loop_thread.join(timeout=max(5.0, self._interval_s * 2))
                if self._loop_thread.is_alive():
                    logger.warning("FailoverController thread did not stop within timeout")
            self._is_running = False
        self.step_down(TransitionReason.SHUTDOWN)
        logger.info("FailoverController stopped")

    def step_down(self, reason: TransitionReason) -> None:
        """Leave any serving role for FAULT (shutdown path)."""
        role = self._identity.role
        if role == NodeRole.MASTER:
            self._release()
        if role != NodeRole.FAULT:
            self._commit(
                TransitionEvent(
                    ts=self._clock(), from_role=role, to_role=NodeRole.FAULT, reason=reason
                )
            )

    def _evaluation_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.step()
            except Exception:
                logger.exception("Error in failover evaluation loop")
            self._stop_event.wait(timeout=self._interval_s)
