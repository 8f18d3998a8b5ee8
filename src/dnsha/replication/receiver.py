"""Receive side of replication: a small TCP server applying peer pushes.

Safety rules:
- Every body is verified against the offered sha256 before it lands
- Files are written to a temp file in the target directory and renamed
  into place, so readers never see a partial file
- Paths outside a configured root, or under an unknown alias, are refused
- A node that is MASTER refuses pushes (the MASTER is the source of truth)
- Offers older than the last applied generation from the same sender
  process are acknowledged as stale and ignored
- A full resync mirrors the offered directories; otherwise only directories
  emptied by the push's own deletes are removed
"""

from __future__ import annotations

import hashlib
import logging
import os
import socket
import socketserver
import tempfile
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

from dnsha.core import NodeRole
from dnsha.errors import ChecksumMismatchError, ProtocolError, ReplicationError, TransferError
from dnsha.observability.metrics import HaMetrics, get_ha_metrics
from dnsha.replication.manifest import (
    TEMP_PREFIX,
    FileEntry,
    iter_files,
    resolve_path,
    sha256_file,
    split_path,
)
from dnsha.replication.protocol import (
    MSG_ACK,
    MSG_DATA,
    MSG_ERROR,
    MSG_NEED,
    MSG_OFFER,
    recv_body,
    recv_message,
    send_message,
)

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class _ReplicationTCPServer(socketserver.TCPServer):
    allow_reuse_address = True
    receiver: ReplicationReceiver


class _PushHandler(socketserver.BaseRequestHandler):
    server: _ReplicationTCPServer

    def handle(self) -> None:
        self.server.receiver.handle_session(self.request, peer=self.client_address[0])


class ReplicationReceiver:
    """Applies pushes from the peer to the local roots.

    Sessions are handled one at a time, so at most one push is applied at
    once.

    Usage:
        receiver = ReplicationReceiver(roots, port=8731, role_fn=identity_cell_role)
        receiver.start()
        receiver.stop()
    """

    def __init__(
        self,
        roots: dict[str, Path],
        *,
        host: str = "0.0.0.0",
        port: int = 8731,
        role_fn: Callable[[], NodeRole],
        timeout_s: float = 10.0,
        max_file_bytes: int = 16 * 1024 * 1024,
        metrics: HaMetrics | None = None,
    ) -> None:
        self._roots = dict(roots)
        self._host = host
        self._port = port
        self._role_fn = role_fn
        self._timeout_s = timeout_s
        self._max_file_bytes = max_file_bytes
        self._metrics = metrics or get_ha_metrics()
        self._last_generation: dict[tuple[str, str], int] = {}
        self._server: _ReplicationTCPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int:
        """Bound port (useful when constructed with port=0)."""
        if self._server is not None:
            return int(self._server.server_address[1])
        return self._port

    @property
    def is_running(self) -> bool:
        return self._server is not None

    def last_generation(self, sender: str, boot_id: str) -> int | None:
        return self._last_generation.get((sender, boot_id))

    # ── lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._server is not None:
            return
        server = _ReplicationTCPServer((self._host, self._port), _PushHandler)
        server.receiver = self
        self._server = server
        self._thread = threading.Thread(
            target=server.serve_forever, name="replication-receiver", daemon=True
        )
        self._thread.start()
        logger.info(
            "ReplicationReceiver started",
            extra={"host": self._host, "port": self.port, "roots": sorted(self._roots)},
        )

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread:
            self._thread.join(timeout=self._timeout_s)
        self._server = None
        logger.info("ReplicationReceiver stopped")

    # ── session ───────────────────────────────────────────────────────────

    def handle_session(self, sock: socket.socket, peer: str = "?") -> None:
        """Serve one push. Never raises; failures are logged and answered."""
        sock.settimeout(self._timeout_s)
        try:
            offer = recv_message(sock, MSG_OFFER)
            self._serve_offer(sock, offer)
        except TransferError as e:
            logger.warning(
                "REPLICATION_RECEIVE_FAILED",
                extra={"component": "replication", "peer": peer, "failure": str(e)},
            )
        except (ReplicationError, ProtocolError) as e:
            logger.warning(
                "REPLICATION_RECEIVE_FAILED",
                extra={"component": "replication", "peer": peer, "failure": str(e)},
            )
            self._reply_error(sock, str(e))
        except OSError as e:
            logger.error(
                "REPLICATION_APPLY_FAILED",
                extra={"component": "replication", "peer": peer, "failure": str(e)},
            )
            self._reply_error(sock, f"apply failed: {e}")

    def _reply_error(self, sock: socket.socket, reason: str) -> None:
        try:
            send_message(sock, MSG_ERROR, reason=reason)
        except (TransferError, ProtocolError):
            logger.debug("Could not deliver ERROR reply: %s", reason)

    def _serve_offer(self, sock: socket.socket, offer: dict[str, Any]) -> None:
        role = self._role_fn()
        if role == NodeRole.MASTER:
            logger.warning(
                "REPLICATION_PUSH_REFUSED",
                extra={
                    "component": "replication",
                    "sender": offer.get("sender"),
                    "generation": offer.get("generation"),
                    "role": role.value,
                },
            )
            self._reply_error(sock, "receiver is MASTER")
            return

        try:
            generation = int(offer["generation"])
            full = bool(offer.get("full", False))
            sender = str(offer["sender"])
            boot_id = str(offer["boot_id"])
            files = {e.path: e for e in (FileEntry.from_dict(d) for d in offer.get("files", []))}
            deletes = [str(p) for p in offer.get("deletes", [])]
            skipped = {str(p) for p in offer.get("skipped", [])}
            dirs = [str(p) for p in offer.get("dirs", [])]
            offered_roots = [str(r) for r in offer.get("roots", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"invalid OFFER: {e}") from None

        key = (sender, boot_id)
        last = self._last_generation.get(key)
        if last is not None and generation < last:
            logger.info(
                "REPLICATION_STALE_OFFER",
                extra={
                    "component": "replication",
                    "sender": sender,
                    "generation": generation,
                    "last_generation": last,
                },
            )
            send_message(sock, MSG_ACK, generation=generation, applied=0, deleted=0, stale=True)
            return

        unknown_roots = [r for r in offered_roots if r not in self._roots]
        if unknown_roots:
            raise ReplicationError(f"unknown sync root aliases: {unknown_roots}")

        needed: list[str] = []
        for path, entry in files.items():
            local = resolve_path(self._roots, path)
            if not self._matches(local, entry):
                needed.append(path)
        # Refuse bad delete and directory paths before any byte is written
        for path in deletes:
            resolve_path(self._roots, path)
        keep_dirs = {resolve_path(self._roots, path) for path in dirs}

        send_message(sock, MSG_NEED, paths=needed)

        applied = 0
        for path in needed:
            entry = files[path]
            header = recv_message(sock, MSG_DATA)
            if header.get("path") != path:
                raise ProtocolError(f"expected DATA for {path}, got {header.get('path')!r}")
            body = recv_body(sock, int(header.get("size", -1)), self._max_file_bytes)
            actual = hashlib.sha256(body).hexdigest()
            if actual != entry.sha256:
                raise ChecksumMismatchError(path, entry.sha256, actual)
            self._write_atomic(resolve_path(self._roots, path), body, entry.mode)
            applied += 1

        deleted = 0
        for path in deletes:
            local = resolve_path(self._roots, path)
            deleted += self._delete(local)
            if not full:
                self._prune_emptied(local.parent, self._roots[split_path(path)[0]])
        if full:
            keep = files.keys() | skipped
            for alias in offered_roots:
                for path, local in list(iter_files(alias, self._roots[alias])):
                    if path not in keep:
                        deleted += self._delete(local)
            for directory in sorted(keep_dirs):
                directory.mkdir(parents=True, exist_ok=True)
            for alias in offered_roots:
                self._prune_empty_dirs(self._roots[alias], keep_dirs)

        self._last_generation[key] = max(generation, last or 0)
        self._metrics.files_applied += applied
        logger.info(
            "REPLICATION_APPLIED",
            extra={
                "component": "replication",
                "sender": sender,
                "generation": generation,
                "full": full,
                "offered": len(files),
                "applied": applied,
                "deleted": deleted,
            },
        )
        send_message(
            sock, MSG_ACK, generation=generation, applied=applied, deleted=deleted, stale=False
        )

    @staticmethod
    def _matches(local: Path, entry: FileEntry) -> bool:
        """True if local already has the offered content; fixes mode drift."""
        try:
            if local.is_symlink() or not local.is_file():
                return False
            st = local.stat()
            if st.st_size != entry.size or sha256_file(local) != entry.sha256:
                return False
            if st.st_mode & 0o7777 != entry.mode:
                os.chmod(local, entry.mode)
        except FileNotFoundError:
            return False
        return True

    @staticmethod
    def _write_atomic(target: Path, data: bytes, mode: int) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=TEMP_PREFIX)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, mode)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @staticmethod
    def _delete(local: Path) -> int:
        try:
            if local.is_symlink() or local.is_file():
                local.unlink()
                return 1
        except FileNotFoundError:
            pass
        return 0

    @staticmethod
    def _prune_empty_dirs(root: Path, keep: set[Path]) -> None:
        if not root.is_dir():
            return
        for dirpath, _dirnames, _filenames in os.walk(root, topdown=False):
            directory = Path(dirpath)
            if directory == root or directory in keep:
                continue
            try:
                directory.rmdir()
            except OSError:
                continue  # not empty

    @staticmethod
    def _prune_emptied(directory: Path, root: Path) -> None:
        """Remove directory and its parents below root while they are empty."""
        while directory != root and root in directory.parents:
            try:
                directory.rmdir()
            except OSError:
                return  # not empty, or already gone
            directory = directory.parent
