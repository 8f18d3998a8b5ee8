"""Replication wire protocol over one TCP connection per push.

Framing: 4-byte big-endian length, then a UTF-8 JSON object with a "type"
key. File bodies follow their DATA header as raw bytes of the declared size.

Session (sender = MASTER, receiver = peer):

    OFFER {generation, full, sender, boot_id, roots, files: [FileEntry], deletes, skipped, dirs}
        <- NEED {paths}              (or ERROR {reason})
    DATA {path, size, sha256} + body     (once per needed path)
        <- ACK {generation, applied, deleted, stale}   (or ERROR {reason})
"""

from __future__ import annotations

import json
import socket
import struct
from dataclasses import dataclass
from typing import Any

from dnsha.errors import ProtocolError, TransferError

MSG_OFFER = "OFFER"
MSG_NEED = "NEED"
MSG_DATA = "DATA"
MSG_ACK = "ACK"
MSG_ERROR = "ERROR"

_HEADER = struct.Struct(">I")
MAX_FRAME_BYTES = 8 * 1024 * 1024
BODY_CHUNK_BYTES = 64 * 1024


@dataclass(frozen=True)
class ReplicationJob:
    """One unit of replication work.

    Attributes:
        change_set: Replicated paths changed since the last successful push
        generation: Monotonic push counter of the originating MASTER
        full: Full resync (whole tree offered, receiver deletes extras)
    """

    change_set: frozenset[str]
    generation: int
    full: bool = False


def _recv_exact(sock: socket.socket, size: int) -> bytes:
    chunks: list[bytes] = []
    remaining = size
    while remaining:
        try:
            chunk = sock.recv(min(remaining, BODY_CHUNK_BYTES))
        except OSError as e:
            raise TransferError(f"receive failed: {e}") from e
        if not chunk:
            raise TransferError(f"connection closed with {remaining} bytes outstanding")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _send_all(sock: socket.socket, data: bytes) -> None:
    try:
        sock.sendall(data)
    except OSError as e:
        raise TransferError(f"send failed: {e}") from e


def send_message(sock: socket.socket, msg_type: str, **fields: Any) -> None:
    payload = json.dumps({"type": msg_type, **fields}, separators=(",", ":")).encode()
    if len(payload) > MAX_FRAME_BYTES:
        raise ProtocolError(f"{msg_type} frame too large: {len(payload)} bytes")
    _send_all(sock, _HEADER.pack(len(payload)) + payload)


def recv_message(sock: socket.socket, expected: str | tuple[str, ...] | None = None) -> dict[str, Any]:
    """Read one frame.

    Raises:
        TransferError: Connection failure or timeout.
        ProtocolError: Oversized frame, invalid JSON or unexpected type.
    """
    (size,) = _HEADER.unpack(_recv_exact(sock, _HEADER.size))
    if size > MAX_FRAME_BYTES:
        raise ProtocolError(f"frame too large: {size} bytes")
    try:
        msg = json.loads(_recv_exact(sock, size))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"frame is not JSON: {e}") from None
    if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
        raise ProtocolError("frame must be a JSON object with a type")
    if expected is not None:
        allowed = (expected,) if isinstance(expected, str) else expected
        if msg["type"] not in allowed:
            raise ProtocolError(f"unexpected {msg['type']} frame, wanted {'/'.join(allowed)}")
    return msg


def send_body(sock: socket.socket, data: bytes) -> None:
    _send_all(sock, data)


def recv_body(sock: socket.socket, size: int, limit: int) -> bytes:
    if size < 0 or size > limit:
        raise ProtocolError(f"body size {size} outside [0, {limit}]")
    return _recv_exact(sock, size)
