"""Observability: Prometheus text metrics and the HTTP status endpoints.

The status server lives in dnsha.observability.status and is imported
explicitly by the node wiring.
"""

from dnsha.observability.metrics import HaMetrics, get_ha_metrics, reset_ha_metrics

__all__ = ["HaMetrics", "get_ha_metrics", "reset_ha_metrics"]
