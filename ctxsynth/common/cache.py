"""
TTL Cache

Small explicit time-bounded cache. Owned by whoever constructs it and passed
by reference; there is no module-level instance.
"""

import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


class TTLCache:
    """
    Key/value cache whose entries expire after a fixed number of seconds.

    Usage:
        cache = TTLCache(ttl_seconds=30)
        value = cache.get("status")
        if value is None:
            value = fetch()
            cache.set("status", value)
        cache.invalidate("status")
    """

    def __init__(self, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, key: Hashable) -> Optional[Any]:
        """Return the cached value, or None if absent or expired"""
        item = self._entries.get(key)
        if item is None:
            return None

        stored_at, value = item
        if self._clock() - stored_at >= self._ttl:
            del self._entries[key]
            return None
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._entries[key] = (self._clock(), value)

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one key, or everything when key is None"""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)
