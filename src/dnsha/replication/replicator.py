"""Config replicator: role-gated push loop.

Rules:
- Only a MASTER originates pushes; other roles discard detected changes
  (they are passive receivers)
- Changes are coalesced per debounce window into one ReplicationJob; at most
  one job is in flight
- Becoming MASTER requests one full resync (whole tree, receiver deletes
  extras), since the new MASTER cannot trust its change log
- A failed push is logged and its changes are retried next window; it never
  affects health or role
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from dnsha.core import NodeRole
from dnsha.errors import ProtocolError, PushRejectedError, ReplicationError
from dnsha.observability.metrics import HaMetrics, get_ha_metrics
from dnsha.replication.protocol import ReplicationJob

if TYPE_CHECKING:
    from collections.abc import Callable

    from dnsha.replication.sender import PushResult, ReplicationSender
    from dnsha.replication.watcher import TreeWatcher

logger = logging.getLogger(__name__)


@dataclass
class ReplicatorStats:
    """Counters for one replicator (mirrors the metrics, for /status and tests)."""

    cycles: int = 0
    pushes_ok: int = 0
    pushes_failed: int = 0
    pushes_rejected: int = 0
    discarded_changes: int = 0
    last_error: str | None = None


class ConfigReplicator:
    """Watches the replicated trees and pushes changes while MASTER.

    Usage:
        replicator = ConfigReplicator(watcher, sender, role_fn=cell_role)
        controller.add_master_listener(replicator.request_full_resync)
        replicator.start()
    """

    def __init__(
        self,
        watcher: TreeWatcher,
        sender: ReplicationSender,
        *,
        role_fn: Callable[[], NodeRole],
        debounce_s: float = 1.0,
        metrics: HaMetrics | None = None,
    ) -> None:
        self._watcher = watcher
        self._sender = sender
        self._role_fn = role_fn
        self._debounce_s = debounce_s
        self._metrics = metrics or get_ha_metrics()

        self._lock = threading.Lock()
        self._pending: set[str] = set()
        self._resync_requested = False
        self._generation = 0
        self._last_result: PushResult | None = None
        self._stats = ReplicatorStats()

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._is_running = False

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def pending(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._pending)

    @property
    def resync_requested(self) -> bool:
        return self._resync_requested

    @property
    def stats(self) -> ReplicatorStats:
        return self._stats

    @property
    def last_result(self) -> PushResult | None:
        return self._last_result

    @property
    def is_running(self) -> bool:
        return self._is_running

    def request_full_resync(self) -> None:
        """Ask for a full resync on the next cycle (called on becoming MASTER)."""
        with self._lock:
            self._resync_requested = True
        logger.info("REPLICATION_RESYNC_REQUESTED", extra={"component": "replication"})

    def run_once(self) -> ReplicationJob | None:
        """One debounce cycle. Returns the job pushed successfully, if any."""
        self._stats.cycles += 1
        changed = self._watcher.poll()

        with self._lock:
            # Read under the lock: a resync requested after MASTER was
            # published must survive this cycle
            role = self._role_fn()
            self._pending |= changed
            if role != NodeRole.MASTER:
                if self._pending:
                    self._stats.discarded_changes += len(self._pending)
                    logger.debug(
                        "Discarding %d local changes while %s", len(self._pending), role.value
                    )
                self._pending.clear()
                self._resync_requested = False
                return None
            if not self._pending and not self._resync_requested:
                return None
            self._generation += 1
            job = ReplicationJob(
                change_set=frozenset(self._pending),
                generation=self._generation,
                full=self._resync_requested,
            )
            self._pending.clear()
            self._resync_requested = False

        return self._push(job)

    def _push(self, job: ReplicationJob) -> ReplicationJob | None:
        try:
            result = self._sender.push(job)
        except PushRejectedError as e:
            self._requeue(job)
            self._stats.pushes_rejected += 1
            self._stats.last_error = str(e)
            self._metrics.record_push("rejected")
            logger.warning(
                "REPLICATION_PUSH_REJECTED",
                extra={
                    "component": "replication",
                    "generation": job.generation,
                    "full": job.full,
                    "failure": e.reason,
                },
            )
            return None
        except (ReplicationError, ProtocolError, OSError) as e:
            self._requeue(job)
            self._stats.pushes_failed += 1
            self._stats.last_error = str(e)
            self._metrics.record_push("failed")
            logger.warning(
                "REPLICATION_PUSH_FAILED",
                extra={
                    "component": "replication",
                    "generation": job.generation,
                    "full": job.full,
                    "changes": len(job.change_set),
                    "failure": str(e),
                },
            )
            return None

        self._last_result = result
        self._stats.pushes_ok += 1
        self._stats.last_error = None
        self._metrics.record_push("ok", files=result.sent, generation=job.generation)
        logger.info(
            "REPLICATION_PUSHED",
            extra={
                "component": "replication",
                "generation": job.generation,
                "full": job.full,
                "offered": result.offered,
                "sent": result.sent,
                "applied": result.applied,
                "deleted": result.deleted,
            },
        )
        return job

    def _requeue(self, job: ReplicationJob) -> None:
        with self._lock:
            self._pending |= job.change_set
            if job.full:
                self._resync_requested = True

    # ── loop ──────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._replication_loop, name="config-replicator", daemon=True
        )
        self._thread.start()
        self._is_running = True
        logger.info(
            "ConfigReplicator started",
            extra={"debounce_s": self._debounce_s, "roots": sorted(self._watcher.roots)},
        )

    def stop(self) -> None:
        """Stop at the next cycle boundary; an in-flight push completes."""
        if not self._is_running:
            return
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=30.0)
            if self._thread.is_alive():
                logger.warning("ConfigReplicator thread did not stop within timeout")
        self._is_running = False
        logger.info("ConfigReplicator stopped", extra={"generation": self._generation})

    def _replication_loop(self) -> None:
        while not self._stop_event.wait(timeout=self._debounce_s):
            try:
                self.run_once()
            except Exception:
                logger.exception("Error in replication loop")
