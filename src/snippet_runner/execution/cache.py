from __future__ import annotations

import logging
import threading
from collections import OrderedDict

from .types import ExecutionResult

logger = logging.getLogger(__name__)


def is_cacheable(result: ExecutionResult) -> bool:
    """Return whether a result is a clean success worth caching.

    Example:
        ```python
        if is_cacheable(result):
            cache.store(digest, result)
        ```
    """
    return result.success and not result.error


class ExecutionCache:
    """Content-addressed store of clean results with FIFO eviction.

    Lookups never reorder entries; the oldest inserted digest is evicted
    first once capacity is exceeded.

    Example:
        ```python
        cache = ExecutionCache(capacity=100)
        ```
    """

    def __init__(self, capacity: int) -> None:
        """Initialize an empty cache bounded to `capacity` entries.

        Example:
            ```python
            cache = ExecutionCache(capacity=2)
            ```
        """
        if capacity < 0:
            raise ValueError("capacity must not be negative")
        self._capacity = capacity
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, ExecutionResult] = OrderedDict()

    @property
    def capacity(self) -> int:
        """Return the configured maximum number of entries.

        Example:
            ```python
            assert cache.capacity == 100
            ```
        """
        return self._capacity

    def lookup(self, digest: str) -> ExecutionResult | None:
        """Return the stored result for a digest, or None on a miss.

        Example:
            ```python
            hit = cache.lookup(request.digest)
            ```
        """
        with self._lock:
            return self._entries.get(digest)

    def store(self, digest: str, result: ExecutionResult) -> bool:
        """Store a clean success; return whether the cache changed.

        Example:
            ```python
            stored = cache.store(request.digest, result)
            ```
        """
        if not is_cacheable(result) or self._capacity == 0:
            return False
        with self._lock:
            if digest in self._entries:
                return False
            self._entries[digest] = result
            while len(self._entries) > self._capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted cached result %s", evicted[:16])
            return True

    def clear(self) -> None:
        """Drop every cached entry.

        Example:
            ```python
            cache.clear()
            ```
        """
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, digest: object) -> bool:
        with self._lock:
            return digest in self._entries
