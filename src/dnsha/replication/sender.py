"""Push side of replication: offer a job to the peer and send what it needs."""

from __future__ import annotations

import hashlib
import logging
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dnsha.errors import ChecksumMismatchError, ProtocolError, PushRejectedError, TransferError
from dnsha.replication.manifest import (
    FileEntry,
    build_manifest,
    entry_for,
    list_dirs,
    resolve_path,
)
from dnsha.replication.protocol import (
    MSG_ACK,
    MSG_DATA,
    MSG_ERROR,
    MSG_NEED,
    MSG_OFFER,
    ReplicationJob,
    recv_message,
    send_body,
    send_message,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PushResult:
    """Outcome of one acknowledged push."""

    generation: int
    offered: int
    sent: int
    applied: int
    deleted: int
    stale: bool = False


@dataclass(frozen=True)
class Offer:
    """What one push proposes.

    skipped lists files left out (oversized); a full resync must not delete
    them on the receiver. dirs is only set for a full resync: every directory
    of the trees, so empty ones are mirrored too.
    """

    files: dict[str, FileEntry]
    deletes: list[str]
    skipped: list[str]
    dirs: list[str] = field(default_factory=list)


class ReplicationSender:
    """Pushes ReplicationJobs to the peer's receiver.

    Only regular files up to max_file_bytes are offered; larger ones are
    skipped with a warning. A path in the change set that no longer exists
    locally is offered as a delete.
    """

    def __init__(
        self,
        peer_host: str,
        port: int,
        roots: dict[str, Path],
        *,
        node_id: str,
        boot_id: str,
        timeout_s: float = 10.0,
        max_file_bytes: int = 16 * 1024 * 1024,
    ) -> None:
        self._peer = (peer_host, port)
        self._roots = dict(roots)
        self._node_id = node_id
        self._boot_id = boot_id
        self._timeout_s = timeout_s
        self._max_file_bytes = max_file_bytes

    def build_offer(self, job: ReplicationJob) -> Offer:
        """Files, deletes and skipped paths to offer for a job."""
        if job.full:
            files = build_manifest(self._roots)
            deletes: list[str] = []
        else:
            files = {}
            deletes = []
            for path in sorted(job.change_set):
                entry = entry_for(path, resolve_path(self._roots, path))
                if entry is None:
                    deletes.append(path)
                else:
                    files[path] = entry
        oversized = [p for p, e in files.items() if e.size > self._max_file_bytes]
        for path in oversized:
            logger.warning(
                "Skipping oversized file %s (%d bytes)", path, files[path].size
            )
            del files[path]
        dirs = list_dirs(self._roots) if job.full else []
        return Offer(files=files, deletes=deletes, skipped=oversized, dirs=dirs)

    def push(self, job: ReplicationJob) -> PushResult:
        """Run one push session.

        Raises:
            TransferError: Connect/send/receive failed or timed out.
            PushRejectedError: The peer answered ERROR.
            ProtocolError: The peer spoke something unexpected.
        """
        offer = self.build_offer(job)
        files = offer.files
        try:
            sock = socket.create_connection(self._peer, timeout=self._timeout_s)
        except OSError as e:
            raise TransferError(f"connect to {self._peer[0]}:{self._peer[1]} failed: {e}") from e

        with sock:
            send_message(
                sock,
                MSG_OFFER,
                generation=job.generation,
                full=job.full,
                sender=self._node_id,
                boot_id=self._boot_id,
                roots=sorted(self._roots),
                files=[e.to_dict() for e in files.values()],
                deletes=offer.deletes,
                skipped=offer.skipped,
                dirs=offer.dirs,
            )
            reply = recv_message(sock, (MSG_NEED, MSG_ACK, MSG_ERROR))
            if reply["type"] == MSG_ERROR:
                raise PushRejectedError(str(reply.get("reason", "unspecified")))
            if reply["type"] == MSG_ACK:
                return self._result(job, reply, offered=len(files), sent=0)

            needed = [str(p) for p in reply.get("paths", [])]
            unknown = [p for p in needed if p not in files]
            if unknown:
                raise ProtocolError(f"peer asked for paths never offered: {unknown[:3]}")
            for path in needed:
                self._send_file(sock, files[path])

            reply = recv_message(sock, (MSG_ACK, MSG_ERROR))
            if reply["type"] == MSG_ERROR:
                raise PushRejectedError(str(reply.get("reason", "unspecified")))
            return self._result(job, reply, offered=len(files), sent=len(needed))

    def _send_file(self, sock: socket.socket, entry: FileEntry) -> None:
        local = resolve_path(self._roots, entry.path)
        try:
            data = local.read_bytes()
        except FileNotFoundError:
            raise TransferError(f"{entry.path} vanished during push") from None
        actual = hashlib.sha256(data).hexdigest()
        if actual != entry.sha256:
            # Changed after the offer: the next job carries the new content
            raise ChecksumMismatchError(entry.path, entry.sha256, actual)
        send_message(sock, MSG_DATA, path=entry.path, size=len(data), sha256=actual)
        send_body(sock, data)

    @staticmethod
    def _result(job: ReplicationJob, reply: dict[str, Any], *, offered: int, sent: int) -> PushResult:
        return PushResult(
            generation=int(reply.get("generation", job.generation)),
            offered=offered,
            sent=sent,
            applied=int(reply.get("applied", 0)),
            deleted=int(reply.get("deleted", 0)),
            stale=bool(reply.get("stale", False)),
        )
