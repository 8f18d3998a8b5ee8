"""Health probe types: checks, per-check results and the composite verdict."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from dnsha.core import HealthStatus

DEFAULT_CHECK_TIMEOUT_S = 2.0


@dataclass(frozen=True)
class CheckOutcome:
    """What a check function reports. Functions may also return a plain bool."""

    passed: bool
    detail: str = ""


CheckFn = Callable[[], "CheckOutcome | bool"]


@dataclass(frozen=True)
class HealthCheck:
    """A named, replaceable check.

    Attributes:
        name: Unique name (verdict key, metric label)
        fn: Callable returning CheckOutcome or bool; raising counts as failure
        critical: Failure makes the node UNHEALTHY (else DEGRADED)
        timeout_s: Upper bound on how long sample() waits for this check
    """

    name: str
    fn: CheckFn
    critical: bool = True
    timeout_s: float = DEFAULT_CHECK_TIMEOUT_S


@dataclass(frozen=True)
class CheckResult:
    """Result of one check within one probe cycle."""

    name: str
    passed: bool
    critical: bool
    detail: str = ""
    duration_ms: int = 0


def aggregate(results: tuple[CheckResult, ...] | list[CheckResult]) -> HealthStatus:
    """Tiered aggregation: critical failure -> UNHEALTHY, other failure -> DEGRADED."""
    if any(not r.passed and r.critical for r in results):
        return HealthStatus.UNHEALTHY
    if any(not r.passed for r in results):
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


@dataclass(frozen=True)
class HealthVerdict:
    """Immutable composite verdict published once per probe cycle.

    Attributes:
        timestamp: Wall-clock time the sample started (epoch seconds)
        overall: Aggregated status
        results: Ordered per-check results
    """

    timestamp: float
    overall: HealthStatus
    results: tuple[CheckResult, ...] = ()

    @classmethod
    def from_results(cls, timestamp: float, results: list[CheckResult]) -> HealthVerdict:
        return cls(timestamp=timestamp, overall=aggregate(results), results=tuple(results))

    @property
    def checks(self) -> dict[str, bool]:
        """check-name -> passed."""
        return {r.name: r.passed for r in self.results}

    @property
    def failed_critical(self) -> list[str]:
        return [r.name for r in self.results if not r.passed and r.critical]

    @property
    def failed_noncritical(self) -> list[str]:
        return [r.name for r in self.results if not r.passed and not r.critical]

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "overall": self.overall.value,
            "checks": [
                {
                    "name": r.name,
                    "passed": r.passed,
                    "critical": r.critical,
                    "detail": r.detail,
                    "duration_ms": r.duration_ms,
                }
                for r in self.results
            ],
        }
