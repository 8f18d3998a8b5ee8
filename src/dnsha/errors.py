"""DNSHA exception hierarchy.

Exception hierarchy:
- DnshaError (base)
  - ConfigError (invalid configuration or environment value)
  - VipError (virtual address binding)
    - VipBindError
    - VipUnbindError
  - ProtocolError (malformed heartbeat or replication frame)
  - ReplicationError
    - TransferError (connect/read/write failed or timed out)
    - ChecksumMismatchError (received body does not match offered sha256)
    - PushRejectedError (peer refused the push, e.g. it is MASTER itself)

None of these ever escape a component loop; they are caught at the
component boundary, logged and counted.
"""

from __future__ import annotations


class DnshaError(Exception):
    """Base exception for all DNSHA errors."""


class ConfigError(DnshaError):
    """Raised when configuration or an environment variable is invalid."""


class VipError(DnshaError):
    """Virtual address bind/unbind failure.

    Attributes:
        address: Virtual address involved
        op: Operation that failed (bind, unbind, query)
    """

    def __init__(self, address: str, op: str, message: str | None = None) -> None:
        self.address = address
        self.op = op
        msg = message or f"{op} failed for {address}"
        super().__init__(msg)


class VipBindError(VipError):
    """Binding the virtual address failed."""

    def __init__(self, address: str, message: str | None = None) -> None:
        super().__init__(address, "bind", message)


class VipUnbindError(VipError):
    """Releasing the virtual address failed."""

    def __init__(self, address: str, message: str | None = None) -> None:
        super().__init__(address, "unbind", message)


class ProtocolError(DnshaError):
    """Malformed, oversized or unexpected wire message."""


class ReplicationError(DnshaError):
    """Base class for config replication failures."""


class TransferError(ReplicationError):
    """Network failure during a push (connect, send, receive, timeout)."""


class ChecksumMismatchError(ReplicationError):
    """A received file body does not match its offered checksum.

    Attributes:
        path: Replicated path
        expected: sha256 from the offer
        actual: sha256 of the received body
    """

    def __init__(self, path: str, expected: str, actual: str) -> None:
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(f"checksum mismatch for {path}: expected {expected[:12]}, got {actual[:12]}")


class PushRejectedError(ReplicationError):
    """The receiving peer refused the push."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"push rejected by peer: {reason}")
