"""Virtual address binders.

Contract (all binders):
- bind(address) / unbind(address) are idempotent: repeating them in the
  target state is a no-op, not an error
- failures raise VipBindError / VipUnbindError / VipError(op="query")
- is_bound(address) reports the OS (or simulated) truth, never a cached flag

Addresses are given with their prefix (192.168.1.200/24); comparisons use
the host part only.
"""

from __future__ import annotations

import ipaddress
import logging
import subprocess
import threading
from collections.abc import Callable, Sequence
from typing import Protocol

from dnsha.errors import VipBindError, VipError, VipUnbindError

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT_S = 5.0

Runner = Callable[..., "subprocess.CompletedProcess[str]"]


def _host(address: str) -> str:
    return str(ipaddress.ip_interface(address).ip)


class VipBinder(Protocol):
    """Mechanism that attaches the virtual address to this node."""

    def bind(self, address: str) -> None: ...

    def unbind(self, address: str) -> None: ...

    def is_bound(self, address: str) -> bool: ...


class IpRouteBinder:
    """Binds the VIP with iproute2 (ip addr add/del) on one interface.

    After a successful bind a gratuitous ARP is sent (arping -U) so switches
    and clients learn the new owner; its failure is logged only.
    """

    def __init__(
        self,
        interface: str,
        *,
        gratuitous_arp: bool = True,
        runner: Runner | None = None,
        timeout_s: float = COMMAND_TIMEOUT_S,
    ) -> None:
        self._interface = interface
        self._gratuitous_arp = gratuitous_arp
        self._runner: Runner = runner or subprocess.run
        self._timeout_s = timeout_s

    def _run(self, argv: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return self._runner(
            list(argv),
            capture_output=True,
            text=True,
            timeout=self._timeout_s,
            check=False,
        )

    def is_bound(self, address: str) -> bool:
        host = _host(address)
        try:
            result = self._run(["ip", "-o", "addr", "show", "dev", self._interface])
        except (OSError, subprocess.TimeoutExpired) as e:
            raise VipError(address, "query", f"ip addr show failed: {e}") from e
        if result.returncode != 0:
            raise VipError(address, "query", f"ip addr show: {result.stderr.strip()}")
        for line in result.stdout.splitlines():
            tokens = line.split()
            for i, token in enumerate(tokens[:-1]):
                if token in ("inet", "inet6") and tokens[i + 1].split("/")[0] == host:
                    return True
        return False

    def bind(self, address: str) -> None:
        if self.is_bound(address):
            return
        try:
            result = self._run(["ip", "addr", "add", address, "dev", self._interface])
        except (OSError, subprocess.TimeoutExpired) as e:
            raise VipBindError(address, f"ip addr add failed: {e}") from e
        # "File exists": someone bound it between the check and the add
        if result.returncode != 0 and "File exists" not in result.stderr:
            raise VipBindError(address, f"ip addr add: {result.stderr.strip()}")
        if self._gratuitous_arp:
            self._announce(address)

    def unbind(self, address: str) -> None:
        if not self.is_bound(address):
            return
        try:
            result = self._run(["ip", "addr", "del", address, "dev", self._interface])
        except (OSError, subprocess.TimeoutExpired) as e:
            raise VipUnbindError(address, f"ip addr del failed: {e}") from e
        if result.returncode != 0 and "Cannot assign requested address" not in result.stderr:
            raise VipUnbindError(address, f"ip addr del: {result.stderr.strip()}")

    def _announce(self, address: str) -> None:
        host = _host(address)
        try:
            result = self._run(["arping", "-c", "1", "-U", "-I", self._interface, host])
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Gratuitous ARP failed for %s: %s", host, e)
            return
        if result.returncode != 0:
            logger.warning("Gratuitous ARP failed for %s: %s", host, result.stderr.strip())


class VirtualSegment:
    """Simulated L2 segment: which owners currently hold which addresses."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._owners: dict[str, set[str]] = {}

    def owners(self, address: str) -> frozenset[str]:
        with self._lock:
            return frozenset(self._owners.get(_host(address), set()))

    def attach(self, address: str, owner: str) -> None:
        with self._lock:
            self._owners.setdefault(_host(address), set()).add(owner)

    def detach(self, address: str, owner: str) -> None:
        with self._lock:
            self._owners.get(_host(address), set()).discard(owner)


class InMemoryBinder:
    """Binder over a VirtualSegment, for dry-run mode and tests.

    Attributes:
        fail_bind / fail_unbind: Make the next operations fail (fault injection)
        bind_calls / unbind_calls: Number of state-changing operations performed
    """

    def __init__(self, owner: str, segment: VirtualSegment | None = None) -> None:
        self.owner = owner
        self.segment = segment or VirtualSegment()
        self.fail_bind = False
        self.fail_unbind = False
        self.bind_calls = 0
        self.unbind_calls = 0

    def is_bound(self, address: str) -> bool:
        return self.owner in self.segment.owners(address)

    def bind(self, address: str) -> None:
        if self.is_bound(address):
            return
        if self.fail_bind:
            raise VipBindError(address, "injected bind failure")
        self.segment.attach(address, self.owner)
        self.bind_calls += 1
        logger.debug("Dry-run bind %s on %s", address, self.owner)

    def unbind(self, address: str) -> None:
        if not self.is_bound(address):
            return
        if self.fail_unbind:
            raise VipUnbindError(address, "injected unbind failure")
        self.segment.detach(address, self.owner)
        self.unbind_calls += 1
        logger.debug("Dry-run unbind %s on %s", address, self.owner)
