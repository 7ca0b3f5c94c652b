"""Caches for resolved flag values and the service that selects one."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from enum import Enum
from typing import Any, Hashable, Optional, Protocol, Union

log = logging.getLogger(__name__)


class CacheType(str, Enum):
    """Supported cache kinds."""

    LRU = "lru"
    IN_MEMORY = "mem"
    DISABLED = "disabled"

    def __str__(self) -> str:
        return self.value


class _Cache(Protocol):
    def add(self, key: Hashable, value: Any) -> bool: ...
    def get(self, key: Hashable) -> Any: ...
    def remove(self, key: Hashable) -> bool: ...
    def purge(self) -> None: ...


class InMemoryCache:
    """An unbounded thread-safe cache."""

    def __init__(self) -> None:
        self._values: dict[Hashable, Any] = {}
        self._lock = threading.Lock()

    def add(self, key: Hashable, value: Any) -> bool:
        """Store a value; never evicts, so always returns False."""
        with self._lock:
            self._values[key] = value
        return False

    def get(self, key: Hashable) -> Any:
        """Return the cached value, or None when absent."""
        with self._lock:
            return self._values.get(key)

    def remove(self, key: Hashable) -> bool:
        """Remove a key; returns whether it was present."""
        with self._lock:
            return self._values.pop(key, _MISSING) is not _MISSING

    def purge(self) -> None:
        with self._lock:
            self._values = {}

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)


class LRUCache:
    """A thread-safe cache bounded to max_size, evicting the least recently used entry."""

    def __init__(self, max_size: int) -> None:
        if max_size <= 0:
            raise ValueError("must provide a positive size")
        self.max_size = max_size
        self._values: OrderedDict[Hashable, Any] = OrderedDict()
        self._lock = threading.Lock()

    def add(self, key: Hashable, value: Any) -> bool:
        """Store a value; returns whether an older entry was evicted."""
        with self._lock:
            if key in self._values:
                self._values.move_to_end(key)
                self._values[key] = value
                return False
            self._values[key] = value
            if len(self._values) > self.max_size:
                self._values.popitem(last=False)
                return True
            return False

    def get(self, key: Hashable) -> Any:
        """Return the cached value and mark it recently used, or None when absent."""
        with self._lock:
            if key not in self._values:
                return None
            self._values.move_to_end(key)
            return self._values[key]

    def remove(self, key: Hashable) -> bool:
        """Remove a key; returns whether it was present."""
        with self._lock:
            return self._values.pop(key, _MISSING) is not _MISSING

    def purge(self) -> None:
        with self._lock:
            self._values.clear()

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)


_MISSING = object()


class CacheService:
    """Holds the configured cache and whether caching is enabled."""

    def __init__(self, cache_type: Union[CacheType, str], max_size: int) -> None:
        self.cache: Optional[_Cache] = None
        self._enabled = False
        try:
            kind = CacheType(cache_type)
        except ValueError:
            kind = CacheType.DISABLED

        if kind is CacheType.LRU:
            try:
                self.cache = LRUCache(max_size)
            except ValueError as exc:
                log.error("init lru cache: %s", exc)
            else:
                self._enabled = True
        elif kind is CacheType.IN_MEMORY:
            self.cache = InMemoryCache()
            self._enabled = True

    def is_enabled(self) -> bool:
        return self._enabled

    def disable(self) -> None:
        """Turn caching off and drop everything cached."""
        if self.is_enabled():
            self._enabled = False
            self.cache.purge()