from __future__ import annotations

import threading
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import cachetools

from article_images.core.urls import host_of

T = TypeVar("T")


@dataclass(slots=True)
class CacheStats:
    size: int
    hits: int
    misses: int
    expired: int
    ttl_seconds: float
    max_entries: int


class _ExpiryCountingCache(cachetools.TTLCache):
    def __init__(self, maxsize: int, ttl: float, timer: Callable[[], float]) -> None:
        super().__init__(maxsize=maxsize, ttl=ttl, timer=timer)
        self.expired_count = 0

    def expire(self, time: Any = None) -> list[tuple[Any, Any]]:
        items = super().expire(time)
        self.expired_count += len(items)
        return items


class ResultCache(Generic[T]):
    """Process-local key/value cache with a single fixed TTL and a size bound.

    Backed by ``cachetools.TTLCache``: expired entries are swept on every
    write, and the least recently used entry is evicted once ``max_entries``
    is reached. The clock is injectable so expiry can be tested without
    sleeping.
    """

    def __init__(
        self,
        ttl_seconds: float,
        *,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self._cache = _ExpiryCountingCache(self.max_entries, ttl_seconds, clock)
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> T | None:
        with self._lock:
            value = self._cache.get(key)
            if value is None:
                self._misses += 1
                return None
            self._hits += 1
            return value

    def set(self, key: str, value: T) -> None:
        with self._lock:
            self._cache[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def prune(self) -> int:
        with self._lock:
            return len(self._cache.expire())

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            self._cache.expire()
            return len(self._cache)

    def stats(self) -> CacheStats:
        with self._lock:
            self._cache.expire()
            return CacheStats(
                size=len(self._cache),
                hits=self._hits,
                misses=self._misses,
                expired=self._cache.expired_count,
                ttl_seconds=self.ttl_seconds,
                max_entries=self.max_entries,
            )


class DomainVisitCounter:
    """Advisory per-host request counter; only used for diagnostics."""

    def __init__(self) -> None:
        self._counts: Counter[str] = Counter()
        self._lock = threading.Lock()

    def visit(self, url: str) -> int:
        host = host_of(url)
        if not host:
            return 0
        with self._lock:
            self._counts[host] += 1
            return self._counts[host]

    def count(self, url_or_host: str) -> int:
        host = host_of(url_or_host) if "://" in url_or_host else url_or_host.lower()
        with self._lock:
            return self._counts.get(host, 0)

    def most_common(self, limit: int = 20) -> list[tuple[str, int]]:
        with self._lock:
            return self._counts.most_common(limit)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
