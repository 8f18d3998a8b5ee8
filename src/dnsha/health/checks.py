"""Check primitives for the health probe.

Each factory returns a zero-argument callable. They only inspect local OS
state; nothing here restarts services or changes configuration.

Primitives:
- process_alive: is process X running (psutil)
- port_listening: is TCP port P accepting connections
- dns_resolves: does a test query return an answer within timeout (aiodns)
- http_ok: does the admin UI answer (httpx)
- disk_headroom: is disk usage below a threshold (psutil)
- vip_consistent: is the VIP bound exactly when this node is MASTER
"""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import TYPE_CHECKING

import aiodns
import httpx
import psutil

from dnsha.core import NodeRole
from dnsha.errors import ConfigError
from dnsha.health.types import DEFAULT_CHECK_TIMEOUT_S, CheckFn, CheckOutcome, HealthCheck

if TYPE_CHECKING:
    from collections.abc import Callable

    from dnsha.config import CheckSpec
    from dnsha.ha.vip import VipBinder

logger = logging.getLogger(__name__)


def process_alive(process: str) -> CheckFn:
    """Pass if a process with this exact name is running."""

    def check() -> CheckOutcome:
        for proc in psutil.process_iter(["name"]):
            if proc.info.get("name") == process:
                return CheckOutcome(True, f"{process} pid={proc.pid}")
        return CheckOutcome(False, f"{process} not running")

    return check


def port_listening(port: int, host: str = "127.0.0.1", timeout_s: float = 1.0) -> CheckFn:
    """Pass if a TCP connection to host:port succeeds."""

    def check() -> CheckOutcome:
        try:
            with socket.create_connection((host, port), timeout=timeout_s):
                return CheckOutcome(True, f"{host}:{port} accepting")
        except OSError as e:
            return CheckOutcome(False, f"{host}:{port} {e.__class__.__name__}: {e}")

    return check


def dns_resolves(
    qname: str,
    server: str = "127.0.0.1",
    port: int = 53,
    timeout_s: float = DEFAULT_CHECK_TIMEOUT_S,
) -> CheckFn:
    """Pass if an A query for qname against server returns at least one record."""

    async def _query() -> list[str]:
        resolver = aiodns.DNSResolver(
            nameservers=[server], timeout=timeout_s, tries=1, udp_port=port, tcp_port=port
        )
        answers = await resolver.query(qname, "A")
        return [a.host for a in answers]

    def check() -> CheckOutcome:
        try:
            hosts = asyncio.run(_query())
        except aiodns.error.DNSError as e:
            return CheckOutcome(False, f"{qname} @{server}: {e}")
        if not hosts:
            return CheckOutcome(False, f"{qname} @{server}: empty answer")
        return CheckOutcome(True, f"{qname} -> {hosts[0]}")

    return check


def http_ok(url: str, timeout_s: float = DEFAULT_CHECK_TIMEOUT_S) -> CheckFn:
    """Pass if GET url answers with a non-5xx status."""

    def check() -> CheckOutcome:
        try:
            response = httpx.get(url, timeout=timeout_s, follow_redirects=False)
        except httpx.HTTPError as e:
            return CheckOutcome(False, f"{url}: {e.__class__.__name__}")
        if response.status_code >= 500:
            return CheckOutcome(False, f"{url}: HTTP {response.status_code}")
        return CheckOutcome(True, f"{url}: HTTP {response.status_code}")

    return check


def disk_headroom(path: str = "/", max_used_pct: float = 90.0) -> CheckFn:
    """Pass while disk usage of path is below max_used_pct."""

    def check() -> CheckOutcome:
        usage = psutil.disk_usage(path)
        ok = usage.percent < max_used_pct
        return CheckOutcome(ok, f"{path} {usage.percent:.1f}% used (limit {max_used_pct}%)")

    return check


def vip_consistent(role_fn: Callable[[], NodeRole], binder: VipBinder, address: str) -> CheckFn:
    """Pass if the VIP is bound exactly when this node claims MASTER."""

    def check() -> CheckOutcome:
        role = role_fn()
        bound = binder.is_bound(address)
        expected = role == NodeRole.MASTER
        if bound == expected:
            return CheckOutcome(True, f"role={role.value} bound={bound}")
        return CheckOutcome(False, f"role={role.value} but bound={bound}")

    return check


def build_checks(
    specs: list[CheckSpec],
    *,
    default_timeout_s: float = DEFAULT_CHECK_TIMEOUT_S,
    role_fn: Callable[[], NodeRole] | None = None,
    binder: VipBinder | None = None,
    vip: str | None = None,
) -> list[HealthCheck]:
    """Turn declarative CheckSpecs into HealthChecks, preserving order.

    Raises:
        ConfigError: Missing kind-specific parameter, or a vip check without
            role_fn/binder/vip.
    """
    checks: list[HealthCheck] = []
    for spec in specs:
        timeout = spec.timeout_s or default_timeout_s
        p = spec.params
        try:
            if spec.kind == "process":
                fn = process_alive(p["process"])
            elif spec.kind == "port":
                fn = port_listening(
                    int(p["port"]), host=p.get("host", "127.0.0.1"), timeout_s=timeout
                )
            elif spec.kind == "dns":
                fn = dns_resolves(
                    p["qname"],
                    server=p.get("server", "127.0.0.1"),
                    port=int(p.get("port", 53)),
                    timeout_s=timeout,
                )
            elif spec.kind == "http":
                fn = http_ok(p["url"], timeout_s=timeout)
            elif spec.kind == "disk":
                fn = disk_headroom(p.get("path", "/"), float(p.get("max_used_pct", 90.0)))
            else:  # vip
                if role_fn is None or binder is None or vip is None:
                    raise ConfigError(f"check {spec.name}: vip check needs role, binder and vip")
                fn = vip_consistent(role_fn, binder, vip)
        except KeyError as e:
            raise ConfigError(f"check {spec.name}: missing parameter {e.args[0]!r}") from None
        checks.append(HealthCheck(spec.name, fn, critical=spec.critical, timeout_s=timeout))
    logger.debug(
        "HEALTH_CHECKS_BUILT",
        extra={"checks": [c.name for c in checks], "critical": [c.name for c in checks if c.critical]},
    )
    return checks
