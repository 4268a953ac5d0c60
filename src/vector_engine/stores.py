"""Byte-level persistence interface used by the storage manager.

``Store`` is a minimal key/value protocol. ``InMemoryStore`` backs tests and
ephemeral engines; ``FileStore`` writes one file per key, sharded into
subdirectories by key prefix to bound directory fan-out.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Protocol

SHARD_PREFIX_LENGTH = 2
DOCUMENT_SUFFIX = ".vdoc"


def shard_prefix(key: str) -> str:
    """Subdirectory name for a key: its first two characters."""
    return key[:SHARD_PREFIX_LENGTH]


class Store(Protocol):
    """Protocol for key/value byte stores."""

    def get(self, key: str) -> bytes | None:
        """Return the stored bytes, or None if the key is absent."""
        ...

    def put(self, key: str, data: bytes) -> None:
        """Write (or overwrite) the bytes for a key."""
        ...

    def delete(self, key: str) -> bool:
        """Remove a key; return True if it existed."""
        ...

    def list_keys(self) -> list[str]:
        """Return all stored keys."""
        ...


class InMemoryStore:
    """Dict-backed store."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> bytes | None:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(data)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def list_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)


class FileStore:
    """One file per key at ``<root>/<shard_prefix(key)>/<key>.vdoc``.

    Writes go to a temporary sibling file and are moved into place with
    ``os.replace`` so readers never observe a partially written package.
    """

    def __init__(self, root: Path, suffix: str = DOCUMENT_SUFFIX):
        self.root = Path(root)
        self.suffix = suffix
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.root / shard_prefix(key) / f"{key}{self.suffix}"

    def get(self, key: str) -> bytes | None:
        path = self.path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def put(self, key: str, data: bytes) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{threading.get_ident()}.tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)

    def delete(self, key: str) -> bool:
        path = self.path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        # Drop the shard directory once it is empty
        try:
            path.parent.rmdir()
        except OSError:
            pass
        return True

    def list_keys(self) -> list[str]:
        return sorted(p.name[: -len(self.suffix)] for p in self.root.glob(f"*/*{self.suffix}"))
