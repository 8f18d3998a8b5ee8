"""Health probe: named checks with a criticality tag, aggregated per cycle.

Components:
- HealthCheck / CheckOutcome / CheckResult / HealthVerdict: value types
- HealthProbe: periodic sampler publishing the latest verdict
- build_checks: declarative CheckSpec -> HealthCheck
"""

from dnsha.health.checks import build_checks
from dnsha.health.probe import HealthProbe
from dnsha.health.types import CheckOutcome, CheckResult, HealthCheck, HealthVerdict, aggregate

__all__ = [
    "CheckOutcome",
    "CheckResult",
    "HealthCheck",
    "HealthProbe",
    "HealthVerdict",
    "aggregate",
    "build_checks",
]
