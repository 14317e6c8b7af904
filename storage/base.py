"""
Persistence contract shared by the certificate store and the challenge store.

Backends only need last-writer-wins get/set for short string keys.  The
orchestrator never depends on anything stronger than that.  ``delete`` is
used solely to clear challenge tokens once their authorization completes.
"""
from __future__ import annotations

import abc
from typing import Optional

# Reserved keys in the certificate store
ACCOUNT_KEY = "account"
SITE_KEY = "site"


class KeyValueStore(abc.ABC):
    """Byte payloads keyed by short identifiers.

    ``get`` returns None for a missing key; it raises StorageUnavailable
    only when the medium itself cannot be reached.
    """

    @abc.abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        ...

    @abc.abstractmethod
    def set(self, key: str, value: bytes) -> None:
        ...

    @abc.abstractmethod
    def delete(self, key: str) -> None:
        """Remove *key*; deleting a missing key is not an error."""
