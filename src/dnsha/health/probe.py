"""Health probe: periodic composite verdict over named checks.

Runs every check on a worker pool and waits for each one at most its own
timeout, measured from the start of the cycle. A check that times out, raises,
or is still running from a previous cycle counts as failed for this cycle.

The loop runs on a daemon thread with an interruptible wait; a failing
cycle is logged and the next one runs as usual.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TYPE_CHECKING

from dnsha.core import HealthStatus
from dnsha.health.types import CheckOutcome, CheckResult, HealthCheck, HealthVerdict
from dnsha.observability.metrics import HaMetrics, get_ha_metrics

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_PROBE_INTERVAL_S = 2.0


def _run_check(check: HealthCheck) -> tuple[CheckOutcome, int]:
    start = time.monotonic()
    raw = check.fn()
    outcome = raw if isinstance(raw, CheckOutcome) else CheckOutcome(bool(raw))
    return outcome, int((time.monotonic() - start) * 1000)


class HealthProbe:
    """Samples the configured checks and publishes the latest verdict.

    Usage:
        probe = HealthProbe(checks, interval_s=2.0)
        probe.start()        # background sampling
        verdict = probe.latest()
        ...
        probe.stop()

    sample() may also be called directly (dnsha check, tests).
    Samples start interval_s apart however long each one takes; a sample
    that overruns the interval is followed by the next one immediately.
    The latest verdict has a single writer (the probe loop); readers get
    the published immutable object.
    """

    def __init__(
        self,
        checks: list[HealthCheck],
        *,
        interval_s: float = DEFAULT_PROBE_INTERVAL_S,
        clock: Callable[[], float] | None = None,
        monotonic: Callable[[], float] | None = None,
        metrics: HaMetrics | None = None,
    ) -> None:
        names = [c.name for c in checks]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate check names: {names}")
        self._checks = list(checks)
        self._interval_s = interval_s
        self._clock = clock or time.time
        self._monotonic = monotonic or time.monotonic
        self._metrics = metrics or get_ha_metrics()
        self._executor = ThreadPoolExecutor(
            max_workers=max(2, len(self._checks)), thread_name_prefix="health-check"
        )
        self._inflight: dict[str, Future[tuple[CheckOutcome, int]]] = {}
        self._latest: HealthVerdict | None = None
        self._last_overall: HealthStatus | None = None

        self._stop_event = threading.Event()
        self._loop_thread: threading.Thread | None = None
        self._is_running = False

    @property
    def checks(self) -> list[HealthCheck]:
        return list(self._checks)

    @property
    def is_running(self) -> bool:
        return self._is_running

    def latest(self) -> HealthVerdict | None:
        """Most recently published verdict (None before the first sample)."""
        return self._latest

    def sample(self) -> HealthVerdict:
        """Evaluate all checks once and return a fresh verdict.

        Never blocks longer than the largest per-check timeout.
        """
        ts = self._clock()
        started = time.monotonic()

        pending: list[tuple[HealthCheck, Future[tuple[CheckOutcome, int]] | None]] = []
        for check in self._checks:
            previous = self._inflight.get(check.name)
            if previous is not None and not previous.done():
                # Hung from an earlier cycle: do not pile up another worker
                pending.append((check, None))
                continue
            future = self._executor.submit(_run_check, check)
            self._inflight[check.name] = future
            pending.append((check, future))

        results: list[CheckResult] = []
        for check, future in pending:
            if future is None:
                results.append(
                    CheckResult(check.name, False, check.critical, "still running from previous cycle")
                )
                continue
            remaining = max(0.0, started + check.timeout_s - time.monotonic())
            try:
                outcome, duration_ms = future.result(timeout=remaining)
            except FutureTimeoutError:
                results.append(
                    CheckResult(
                        check.name,
                        False,
                        check.critical,
                        f"timed out after {check.timeout_s}s",
                        int(check.timeout_s * 1000),
                    )
                )
                continue
            except Exception as e:
                # Cannot determine status -> failed, never ignored
                results.append(
                    CheckResult(check.name, False, check.critical, f"error: {e.__class__.__name__}: {e}")
                )
                continue
            results.append(
                CheckResult(check.name, outcome.passed, check.critical, outcome.detail, duration_ms)
            )

        return HealthVerdict.from_results(ts, results)

    def publish(self, verdict: HealthVerdict) -> None:
        """Make verdict the latest one and log status changes."""
        self._latest = verdict
        self._metrics.record_verdict(verdict)
        if verdict.overall != self._last_overall:
            log = logger.warning if verdict.overall != HealthStatus.HEALTHY else logger.info
            log(
                "HEALTH_STATUS_CHANGED",
                extra={
                    "component": "health_probe",
                    "from_status": self._last_overall.value if self._last_overall else None,
                    "to_status": verdict.overall.value,
                    "failed_critical": verdict.failed_critical,
                    "failed_noncritical": verdict.failed_noncritical,
                    "ts": verdict.timestamp,
                },
            )
            self._last_overall = verdict.overall

    def run_once(self) -> HealthVerdict:
        verdict = self.sample()
        self.publish(verdict)
        return verdict

    def start(self) -> None:
        """Start background sampling. Idempotent."""
        if self._is_running:
            return
        self._stop_event.clear()
        self._loop_thread = threading.Thread(target=self._probe_loop, name="health-probe", daemon=True)
        self._loop_thread.start()
        self._is_running = True
        logger.info(
            "HealthProbe started",
            extra={"interval_s": self._interval_s, "checks": [c.name for c in self._checks]},
        )

    def stop(self) -> None:
        """Stop at the next iteration boundary and release the worker pool."""
        if not self._is_running:
            self._executor.shutdown(wait=False, cancel_futures=True)
            return
        self._stop_event.set()
        if self._loop_thread:
            self._loop_thread.join(timeout=max(5.0, self._interval_s * 2))
            if self._loop_thread.is_alive():
                logger.warning("HealthProbe thread did not stop within timeout")
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._is_running = False
        logger.info("HealthProbe stopped")

    def _probe_loop(self) -> None:
        deadline = self._monotonic()
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Error in health probe loop")
            deadline += self._interval_s
            now = self._monotonic()
            if now > deadline:
                # Overran a whole interval: realign instead of bursting
                deadline = now
            self._stop_event.wait(timeout=deadline - now)
