"""Thread-safe TTL cache with single-flight loading.

Used by the gateway to bound venue call volume for prices, candles, account
snapshots and symbol filters. An expired entry is a miss that triggers a
refetch, never an error.
"""
import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


class TTLCache:
    """Key/value cache whose entries expire ``ttl_seconds`` after being stored."""

    def __init__(self, ttl_seconds: float):
        self.ttl = ttl_seconds
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._loading: Dict[Hashable, threading.Lock] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        """Return the cached value, or None if missing or stale."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if time.monotonic() - stored_at > self.ttl:
                del self._entries[key]
                return None
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = (time.monotonic(), value)

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one key, or everything when key is None."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        """Return a fresh cached value or load it once for concurrent callers.

        Concurrent misses on the same key wait for the first loader instead of
        issuing duplicate venue calls. Loader exceptions propagate and nothing
        is cached.
        """
        value = self.get(key)
        if value is not None:
            return value
        with self._lock:
            key_lock = self._loading.setdefault(key, threading.Lock())
        with key_lock:
            value = self.get(key)
            if value is not None:
                return value
            value = loader()
            if value is not None:
                self.set(key, value)
            return value
