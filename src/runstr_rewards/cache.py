"""Key/value cache backends injected into the resolver.

Values are JSON-compatible. A ``ttl`` of 0 stores the entry without expiry.
"""

import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from .database import Database


class CacheBackend(ABC):
    """Abstract base class for cache backends."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return a live value, or None when absent or expired."""

    @abstractmethod
    async def put(self, key: str, value: Any, ttl: float = 0) -> None:
        """Store a value with optional TTL in seconds."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a value, returning whether it existed."""

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> List[str]:
        """List live keys with optional prefix filter."""

    async def contains(self, key: str) -> bool:
        return await self.get(key) is not None


class MemoryCache(CacheBackend):
    """In-process cache, lost on restart."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[Any, float]] = {}  # key -> (value, expires_at)

    def _live(self, key: str) -> bool:
        _, expires_at = self._data[key]
        if expires_at and self._clock() >= expires_at:
            del self._data[key]
            return False
        return True

    async def get(self, key: str) -> Optional[Any]:
        if key in self._data and self._live(key):
            return self._data[key][0]
        return None

    async def put(self, key: str, value: Any, ttl: float = 0) -> None:
        expires_at = self._clock() + ttl if ttl > 0 else 0
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def list_keys(self, prefix: str = "") -> List[str]:
        return [key for key in list(self._data) if key.startswith(prefix) and self._live(key)]


class SqliteCache(CacheBackend):
    """Cache persisted in the service database under one namespace.

    Expiry is stored with the entry so that different keys may carry
    different TTLs.
    """

    def __init__(
        self, database: Database, namespace: str, clock: Callable[[], float] = time.time
    ):
        self.database = database
        self.namespace = namespace
        self._clock = clock

    async def get(self, key: str) -> Optional[Any]:
        row = await self.database.cache_get(self.namespace, key)
        if row is None:
            return None
        raw, _ = row
        entry = json.loads(raw)
        expires_at = entry.get("expires_at") or 0
        if expires_at and self._clock() >= expires_at:
            await self.database.cache_delete(self.namespace, key)
            return None
        return entry.get("value")

    async def put(self, key: str, value: Any, ttl: float = 0) -> None:
        now = self._clock()
        entry = {"value": value, "expires_at": now + ttl if ttl > 0 else 0}
        await self.database.cache_put(self.namespace, key, json.dumps(entry), now)

    async def delete(self, key: str) -> bool:
        existed = await self.database.cache_get(self.namespace, key) is not None
        await self.database.cache_delete(self.namespace, key)
        return existed

    async def list_keys(self, prefix: str = "") -> List[str]:
        keys = []
        for key in await self.database.cache_keys(self.namespace):
            if key.startswith(prefix) and await self.get(key) is not None:
                keys.append(key)
        return keys
