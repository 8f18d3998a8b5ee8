"""Datagram transports for the peer heartbeat.

- UdpTransport: production, one UDP socket bound on the heartbeat port
- LoopbackTransport: in-process pair for tests and local simulations,
  with a switch to cut the link (partition) in either direction
"""

from __future__ import annotations

import logging
import queue
import socket
from typing import Protocol

logger = logging.getLogger(__name__)

RECV_BUFFER_BYTES = 2048


class HeartbeatTransport(Protocol):
    """Unreliable datagram link to the peer."""

    def send(self, data: bytes) -> None:
        """Send one datagram. May raise OSError; callers swallow and count it."""
        ...

    def recv(self, timeout: float) -> bytes | None:
        """Return the next datagram or None after timeout."""
        ...

    def close(self) -> None: ...


class UdpTransport:
    """UDP heartbeat socket.

    Datagrams not coming from peer_host are dropped at this layer; the channel
    still validates every message.
    """

    def __init__(
        self,
        listen_host: str,
        port: int,
        peer_host: str,
        peer_port: int | None = None,
        *,
        send_timeout_s: float = 0.5,
    ) -> None:
        self._peer = (peer_host, peer_port if peer_port is not None else port)
        self._peer_ips = self._resolve(peer_host)
        self._send_timeout_s = send_timeout_s
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind((listen_host, port))
        self._send_sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self._send_sock.settimeout(send_timeout_s)

    @staticmethod
    def _resolve(host: str) -> frozenset[str]:
        try:
            return frozenset(info[4][0] for info in socket.getaddrinfo(host, None, socket.AF_INET))
        except OSError:
            logger.warning("Could not resolve peer host %s, accepting any sender", host)
            return frozenset()

    @property
    def local_port(self) -> int:
        return int(self._sock.getsockname()[1])

    def send(self, data: bytes) -> None:
        self._send_sock.sendto(data, self._peer)

    def recv(self, timeout: float) -> bytes | None:
        self._sock.settimeout(timeout)
        try:
            data, addr = self._sock.recvfrom(RECV_BUFFER_BYTES)
        except TimeoutError:
            return None
        if self._peer_ips and addr[0] not in self._peer_ips:
            logger.debug("Dropping heartbeat from unexpected sender %s", addr[0])
            return None
        return data

    def close(self) -> None:
        self._sock.close()
        self._send_sock.close()


class LoopbackTransport:
    """One end of an in-process datagram link.

    Usage:
        a, b = LoopbackTransport.pair()
        a.link_up = False   # a's datagrams are lost from now on
    """

    def __init__(self) -> None:
        self._inbox: queue.Queue[bytes] = queue.Queue()
        self._other: LoopbackTransport | None = None
        self.link_up = True
        self.sent = 0

    @classmethod
    def pair(cls) -> tuple[LoopbackTransport, LoopbackTransport]:
        a, b = cls(), cls()
        a._other, b._other = b, a
        return a, b

    def send(self, data: bytes) -> None:
        self.sent += 1
        if self.link_up and self._other is not None:
            self._other._inbox.put(data)

    def recv(self, timeout: float) -> bytes | None:
        try:
            return self._inbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def recv_nowait(self) -> bytes | None:
        try:
            return self._inbox.get_nowait()
        except queue.Empty:
            return None

    def close(self) -> None:
        self._other = None
