"""
Opportunistic feed cache: bytes stored with an expiry timestamp.

Absent, expired and unreadable entries all read back as a miss. There is no
locking; one process owns the cache directory.
"""
from __future__ import annotations

import hashlib
import logging
import time
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class FeedCache(Protocol):
    def get(self, key: str) -> Optional[bytes]:
        ...

    def put(self, key: str, payload: bytes, expiry_epoch_ms: int) -> None:
        ...


class MemoryCache:
    """In-process cache; handy for tests and a single Streamlit session."""

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[int, bytes]] = {}

    def get(self, key: str) -> Optional[bytes]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expiry, payload = entry
        if now_ms() >= expiry:
            self._entries.pop(key, None)
            return None
        return payload

    def put(self, key: str, payload: bytes, expiry_epoch_ms: int) -> None:
        self._entries[key] = (int(expiry_epoch_ms), bytes(payload))


class FileCache:
    """
    One file per key under `directory`.

    File layout: first line is the expiry (epoch ms), the rest is the payload.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]
        safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in key)[:40]
        return self.directory / f"{safe}-{digest}.cache"

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            raw = path.read_bytes()
            header, _, payload = raw.partition(b"\n")
            expiry = int(header.decode("ascii").strip())
        except (OSError, ValueError, UnicodeDecodeError) as exc:
            logger.warning("Ignoring unreadable cache entry %s: %s", path, exc)
            return None

        if now_ms() >= expiry:
            logger.debug("Cache entry %s expired", key)
            return None
        return payload

    def put(self, key: str, payload: bytes, expiry_epoch_ms: int) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_bytes(str(int(expiry_epoch_ms)).encode("ascii") + b"\n" + bytes(payload))
            tmp.replace(path)
        except OSError as exc:
            # Caching is opportunistic; a read-only disk must not break a fetch
            logger.warning("Could not write cache entry %s: %s", path, exc)
