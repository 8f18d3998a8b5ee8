"""HTTP status endpoints: /healthz, /readyz, /metrics, /status.

Contract:

GET /healthz:
    - 200 always while the process is alive
    - Body: {"status": "ok", "uptime_s": <float>}

GET /readyz:
    - 200 only if this node is MASTER and the VIP is bound, else 503
    - Body: {"ready": true/false, "role": "MASTER"|..., "vip_bound": bool}

GET /metrics:
    - 200, text/plain Prometheus format (dnsha_* metrics)

GET /status:
    - 200, JSON snapshot of identity, health verdict, peer view and replication

Body builders are pure functions so they can be tested without sockets.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import TYPE_CHECKING, Any

from dnsha.core import NodeRole
from dnsha.observability.metrics import HaMetrics, get_ha_metrics

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

METRIC_UP = "dnsha_up"
METRIC_UPTIME = "dnsha_uptime_seconds"


def build_healthz_body(start_time: float, now: float | None = None) -> str:
    now = time.time() if now is None else now
    return json.dumps({"status": "ok", "uptime_s": round(now - start_time, 2)})


def build_readyz_body(role: NodeRole, vip_bound: bool) -> tuple[str, bool]:
    """Build /readyz response body.

    Returns:
        Tuple of (JSON string body, is_ready). Ready means MASTER with the
        VIP actually bound.
    """
    is_ready = role == NodeRole.MASTER and vip_bound
    body = json.dumps({"ready": is_ready, "role": role.value, "vip_bound": vip_bound})
    return body, is_ready


def build_metrics_body(metrics: HaMetrics, start_time: float, now: float | None = None) -> str:
    now = time.time() if now is None else now
    lines = [
        f"# HELP {METRIC_UP} Process is running",
        f"# TYPE {METRIC_UP} gauge",
        f"{METRIC_UP} 1",
        f"# HELP {METRIC_UPTIME} Seconds since start",
        f"# TYPE {METRIC_UPTIME} gauge",
        f"{METRIC_UPTIME} {now - start_time:.2f}",
    ]
    lines.extend(metrics.to_prometheus_lines())
    return "\n".join(lines) + "\n"


class _StatusHTTPServer(HTTPServer):
    role_fn: Callable[[], NodeRole]
    bound_fn: Callable[[], bool]
    status_fn: Callable[[], dict[str, Any]]
    metrics: HaMetrics
    start_time: float


class StatusHandler(BaseHTTPRequestHandler):
    """HTTP handler for health, readiness, metrics and status."""

    server: _StatusHTTPServer

    def do_GET(self) -> None:
        path = self.path.split("?", 1)[0]
        if path == "/healthz":
            self._send(200, "application/json", build_healthz_body(self.server.start_time))
        elif path == "/readyz":
            body, is_ready = build_readyz_body(self.server.role_fn(), self._bound())
            self._send(200 if is_ready else 503, "application/json", body)
        elif path == "/metrics":
            body = build_metrics_body(self.server.metrics, self.server.start_time)
            self._send(200, "text/plain; charset=utf-8", body)
        elif path == "/status":
            self._send(200, "application/json", json.dumps(self.server.status_fn(), default=str))
        else:
            self.send_error(404)

    def _bound(self) -> bool:
        try:
            return self.server.bound_fn()
        except Exception:
            logger.exception("VIP query failed while serving /readyz")
            return False

    def _send(self, status: int, content_type: str, body: str) -> None:
        data = body.encode()
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format: str, *args: object) -> None:
        """Suppress default logging."""
        pass


class StatusServer:
    """Serves the status endpoints on a background thread."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        role_fn: Callable[[], NodeRole],
        bound_fn: Callable[[], bool],
        status_fn: Callable[[], dict[str, Any]],
        metrics: HaMetrics | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._role_fn = role_fn
        self._bound_fn = bound_fn
        self._status_fn = status_fn
        self._metrics = metrics or get_ha_metrics()
        self._server: _StatusHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int:
        if self._server is not None:
            return int(self._server.server_address[1])
        return self._port

    def start(self) -> None:
        if self._server is not None:
            return
        server = _StatusHTTPServer((self._host, self._port), StatusHandler)
        server.role_fn = self._role_fn
        server.bound_fn = self._bound_fn
        server.status_fn = self._status_fn
        server.metrics = self._metrics
        server.start_time = time.time()
        self._server = server
        self._thread = threading.Thread(target=server.serve_forever, name="status-http", daemon=True)
        self._thread.start()
        logger.info("Status server listening", extra={"host": self._host, "port": self.port})

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread:
            self._thread.join(timeout=5.0)
        self._server = None
