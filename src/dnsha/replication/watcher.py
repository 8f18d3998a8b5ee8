"""Polling change detector for the replicated trees.

Each poll walks the roots, compares (mtime_ns, size) with the previous
snapshot and re-hashes only files whose stat changed. A file counts as
changed when it appeared, disappeared or its content hash differs, so a
touch without a content change is not reported.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from dnsha.replication.manifest import iter_files, sha256_file

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Stamp:
    mtime_ns: int
    size: int
    sha256: str


class TreeWatcher:
    """Reports replicated paths created, modified or deleted since last poll.

    Usage:
        watcher = TreeWatcher({"smartdns": Path("/etc/smartdns")})
        changed = watcher.poll()   # {"smartdns/smartdns.conf", ...}
    """

    def __init__(self, roots: dict[str, Path], *, prime: bool = True) -> None:
        self._roots = dict(roots)
        self._snapshot: dict[str, _Stamp] = {}
        if prime:
            self._snapshot = self._scan(self._snapshot)

    @property
    def roots(self) -> dict[str, Path]:
        return dict(self._roots)

    @property
    def tracked(self) -> frozenset[str]:
        return frozenset(self._snapshot)

    def poll(self) -> set[str]:
        """Rescan and return the paths whose existence or content changed."""
        previous = self._snapshot
        current = self._scan(previous)
        changed = set(previous.keys() - current.keys())
        changed |= current.keys() - previous.keys()
        changed |= {
            p
            for p in current.keys() & previous.keys()
            if current[p].sha256 != previous[p].sha256
        }
        self._snapshot = current
        if changed:
            logger.debug("Watcher detected %d changed paths", len(changed))
        return changed

    def _scan(self, previous: dict[str, _Stamp]) -> dict[str, _Stamp]:
        snapshot: dict[str, _Stamp] = {}
        for alias, root in self._roots.items():
            for path, local in iter_files(alias, root):
                try:
                    st = local.stat()
                    old = previous.get(path)
                    if old is not None and (old.mtime_ns, old.size) == (st.st_mtime_ns, st.st_size):
                        snapshot[path] = old
                        continue
                    snapshot[path] = _Stamp(st.st_mtime_ns, st.st_size, sha256_file(local))
                except FileNotFoundError:
                    # Removed between the walk and the stat: treated as deleted
                    continue
        return snapshot
