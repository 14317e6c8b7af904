"""
In-process store.  Default for challenge tokens (they need not survive a
restart) and the substitute for every backend in tests.
"""
from __future__ import annotations

import threading
import time
from typing import Optional

from storage.base import KeyValueStore


class MemoryStore(KeyValueStore):
    """Thread-safe dict with an optional time-to-live applied to every entry."""

    def __init__(self, ttl: float | None = None) -> None:
        self.ttl = ttl
        self._items: dict[str, tuple[bytes, float | None]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires_at = item
            if _expired(expires_at):
                del self._items[key]
                return None
            return value

    def set(self, key: str, value: bytes) -> None:
        expires_at = time.monotonic() + self.ttl if self.ttl else None
        with self._lock:
            self._items[key] = (bytes(value), expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def keys(self) -> list[str]:
        """Live keys, for diagnostics and tests."""
        with self._lock:
            return [k for k, (_, exp) in self._items.items() if not _expired(exp)]


def _expired(expires_at: float | None) -> bool:
    return expires_at is not None and time.monotonic() >= expires_at
