"""
File-backed store: one file per key under a root directory.

Layout:
  <root>/account     — ACME account record (JSON, mode 0o600)
  <root>/site        — PKCS#12 bundle of the active certificate (mode 0o600)
  <root>/<token>     — challenge key authorizations (when used for challenges)

All writes are atomic: temp file in the same directory + fsync + os.replace,
so a crash mid-write leaves the previous value intact and readers never see
a partial file.
"""
from __future__ import annotations

import os
import re
import stat
import tempfile
import time
from pathlib import Path
from typing import Optional

from errors import StorageUnavailable
from storage.base import KeyValueStore

# ACME tokens are base64url; reserved keys are plain words
_SAFE_KEY_RE = re.compile(r"^[A-Za-z0-9_-]{1,255}$")


class FileStore(KeyValueStore):
    """
    Directory of small files.

    *ttl* (seconds) hides entries whose mtime is older than the TTL; it is a
    storage-level concern and the file is only removed on the next read.
    """

    def __init__(self, root: str | Path, ttl: float | None = None) -> None:
        self.root = Path(root)
        self.ttl = ttl

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            if self.ttl and time.time() - path.stat().st_mtime >= self.ttl:
                path.unlink(missing_ok=True)
                return None
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageUnavailable(key, str(exc)) from exc

    def set(self, key: str, value: bytes) -> None:
        path = self._path(key)
        try:
            _atomic_write(path, value)
        except OSError as exc:
            raise StorageUnavailable(key, str(exc)) from exc

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageUnavailable(key, str(exc)) from exc

    def _path(self, key: str) -> Path:
        # A token from the CA must never escape the root directory
        if not _SAFE_KEY_RE.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.root / key


def _atomic_write(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        # Account keys and bundles carry private keys
        os.fchmod(fd, stat.S_IRUSR | stat.S_IWUSR)
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise
