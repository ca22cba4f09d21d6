"""Key-value cache collaborator used for preprocessing results."""

import hashlib
import time
from typing import Any, Protocol


class Cache(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...


class InMemoryTTLCache:
    """Process-local cache with monotonic expiry.

    Single event loop only: get/set never await, so there is no interleaving
    between a lookup and its write.
    """

    def __init__(self, default_ttl: float | None = None, max_entries: int = 1024):
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._data: dict[str, tuple[float | None, Any]] = {}

    async def get(self, key: str) -> Any | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        expires_at = time.monotonic() + ttl if ttl is not None else None
        if key not in self._data and len(self._data) >= self._max_entries:
            # Evict the oldest insertion.
            self._data.pop(next(iter(self._data)))
        self._data[key] = (expires_at, value)

    def __len__(self) -> int:
        return len(self._data)


def preprocess_cache_key(query: str, user_id: str | None) -> str:
    normalized = " ".join((query or "").lower().split())
    digest = hashlib.sha256(f"{user_id or ''}\x00{normalized}".encode()).hexdigest()
    return f"preprocess:{digest}"
