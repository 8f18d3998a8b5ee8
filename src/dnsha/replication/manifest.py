"""Replicated tree manifests and path handling.

A replicated path is "<alias>/<relative posix path>", e.g.
"smartdns/smartdns.conf". Aliases map to a local directory on each node, so
the two nodes may keep their trees in different places.
"""

from __future__ import annotations

import fnmatch
import hashlib
import os
import stat
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any

from dnsha.errors import ReplicationError

# Editor and tool temp files never replicated (vim swap files, vim's 4913
# write probe, emacs backups and lock files, generic .tmp)
EXCLUDE_PATTERNS: tuple[str, ...] = ("*.swp", "*.swx", "*.tmp", "*~", ".#*", "4913")

# Receiver-side temp files use this prefix; they match ".#*" and are excluded
TEMP_PREFIX = ".#dnsha-"

CHUNK_BYTES = 64 * 1024


def is_excluded(name: str) -> bool:
    """True if a file name matches one of the transient-file patterns."""
    return any(fnmatch.fnmatch(name, pattern) for pattern in EXCLUDE_PATTERNS)


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_BYTES), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(frozen=True)
class FileEntry:
    """One regular file in a replicated tree.

    Attributes:
        path: Replicated path ("<alias>/<rel>")
        sha256: Hex digest of the content
        size: Size in bytes
        mode: Permission bits (st_mode & 0o7777)
    """

    path: str
    sha256: str
    size: int
    mode: int

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "sha256": self.sha256, "size": self.size, "mode": self.mode}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileEntry:
        return cls(
            path=str(data["path"]),
            sha256=str(data["sha256"]),
            size=int(data["size"]),
            mode=int(data["mode"]),
        )


def split_path(path: str) -> tuple[str, PurePosixPath]:
    """Split a replicated path into (alias, relative path).

    Raises:
        ReplicationError: Absolute path, empty parts or any ".." component.
    """
    pure = PurePosixPath(path)
    if pure.is_absolute() or len(pure.parts) < 2:
        raise ReplicationError(f"invalid replicated path {path!r}")
    if any(part in ("", ".", "..") for part in pure.parts):
        raise ReplicationError(f"replicated path escapes its root: {path!r}")
    return pure.parts[0], PurePosixPath(*pure.parts[1:])


def resolve_path(roots: dict[str, Path], path: str) -> Path:
    """Map a replicated path onto the local filesystem, refusing escapes."""
    alias, rel = split_path(path)
    root = roots.get(alias)
    if root is None:
        raise ReplicationError(f"unknown sync root alias {alias!r} in {path!r}")
    target = root.joinpath(*rel.parts)
    resolved_root = root.resolve()
    resolved = target.resolve()
    if resolved != resolved_root and resolved_root not in resolved.parents:
        raise ReplicationError(f"replicated path escapes its root: {path!r}")
    return target


def iter_files(alias: str, root: Path) -> Iterator[tuple[str, Path]]:
    """Yield (replicated path, local path) for every regular file under root.

    Symlinks and excluded names are skipped; a missing root yields nothing.
    """
    if not root.is_dir():
        return
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not is_excluded(d))
        base = Path(dirpath)
        for name in sorted(filenames):
            if is_excluded(name):
                continue
            local = base / name
            if local.is_symlink() or not local.is_file():
                continue
            rel = local.relative_to(root).as_posix()
            yield f"{alias}/{rel}", local


def iter_dirs(alias: str, root: Path) -> Iterator[tuple[str, Path]]:
    """Yield (replicated path, local path) for every directory below root."""
    if not root.is_dir():
        return
    for dirpath, dirnames, _filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not is_excluded(d))
        base = Path(dirpath)
        for name in dirnames:
            local = base / name
            if local.is_symlink():
                continue
            yield f"{alias}/{local.relative_to(root).as_posix()}", local


def list_dirs(roots: dict[str, Path]) -> list[str]:
    """All replicated directory paths, empty ones included."""
    return [path for alias, root in sorted(roots.items()) for path, _ in iter_dirs(alias, root)]


def entry_for(path: str, local: Path) -> FileEntry | None:
    """Stat and hash one file; None if it vanished meanwhile."""
    try:
        st = local.stat()
        digest = sha256_file(local)
    except FileNotFoundError:
        return None
    return FileEntry(path=path, sha256=digest, size=st.st_size, mode=stat.S_IMODE(st.st_mode))


def build_manifest(roots: dict[str, Path]) -> dict[str, FileEntry]:
    """Complete manifest of all roots, keyed by replicated path."""
    manifest: dict[str, FileEntry] = {}
    for alias, root in sorted(roots.items()):
        for path, local in iter_files(alias, root):
            entry = entry_for(path, local)
            if entry is not None:
                manifest[path] = entry
    return manifest


def normalize_roots(roots: dict[str, str] | dict[str, Path]) -> dict[str, Path]:
    return {alias: Path(directory) for alias, directory in roots.items()}
