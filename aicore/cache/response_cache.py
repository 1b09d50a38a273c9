"""Fingerprint-keyed response cache with per-operation TTL and single-flight.

The cache owns every ``CacheEntry``.  Entries expire lazily on read, and
writes sweep expired entries out of the backend at most once per
``sweep_interval_s``; there is no sweeper task.  Administrators invalidate
entries explicitly with a glob pattern over ``"<operation>:<fingerprint>"``
(for example ``"moderate:*"`` after a moderation threshold change).

``SingleFlight`` collapses concurrent misses for one fingerprint into a
single upstream call: the first caller becomes the leader, later callers
await the leader's shared future.
"""

import asyncio
import logging
import threading
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, replace
from fnmatch import fnmatchcase
from time import time
from typing import Any, Protocol

from aicore.core.types import Operation
from aicore.metrics import inc_counter

logger = logging.getLogger("aicore.cache")


@dataclass(frozen=True)
class CacheEntry:
    fingerprint: str
    operation: Operation
    result: dict[str, Any]
    provider_used: str
    created_at: float
    expires_at: float
    hit_count: int = 0

    def expired(self, now: float) -> bool:
        return now >= self.expires_at

    @property
    def cache_key(self) -> str:
        return f"{self.operation.value}:{self.fingerprint}"


class CacheBackend(Protocol):
    def get(self, fingerprint: str) -> CacheEntry | None:
        """Return the stored entry, expired or not."""

    def put(self, entry: CacheEntry) -> None:
        """Insert or replace an entry."""

    def delete(self, fingerprint: str) -> bool:
        """Remove an entry; return whether it existed."""

    def keys(self) -> list[tuple[str, Operation]]:
        """Return ``(fingerprint, operation)`` for every stored entry."""

    def prune_expired(self, now: float) -> int:
        """Delete entries that expired at or before *now*; return how many."""

    def __len__(self) -> int:
        """Number of stored entries."""


class InMemoryCacheBackend:
    """Bounded LRU map of entries."""

    def __init__(self, max_entries: int = 50_000):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._max_entries = max_entries
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, fingerprint: str) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is not None:
                self._entries.move_to_end(fingerprint)
            return entry

    def put(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.fingerprint] = entry
            self._entries.move_to_end(entry.fingerprint)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def delete(self, fingerprint: str) -> bool:
        with self._lock:
            return self._entries.pop(fingerprint, None) is not None

    def keys(self) -> list[tuple[str, Operation]]:
        with self._lock:
            return [(fp, entry.operation) for fp, entry in self._entries.items()]

    def prune_expired(self, now: float) -> int:
        with self._lock:
            expired = [fp for fp, entry in self._entries.items() if entry.expired(now)]
            for fingerprint in expired:
                del self._entries[fingerprint]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class SingleFlight:
    """Tracks one in-flight upstream call per key."""

    def __init__(self) -> None:
        self._flights: dict[str, asyncio.Future[Any]] = {}

    def join(self, key: str) -> tuple["asyncio.Future[Any]", bool]:
        """Return ``(future, is_leader)`` for *key*."""
        existing = self._flights.get(key)
        if existing is not None and not existing.done():
            return existing, False
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._flights[key] = future
        return future, True

    def peek(self, key: str) -> "asyncio.Future[Any] | None":
        future = self._flights.get(key)
        if future is None or future.done():
            return None
        return future

    def resolve(self, key: str, value: Any) -> None:
        future = self._flights.pop(key, None)
        if future is not None and not future.done():
            future.set_result(value)

    def reject(self, key: str, exc: BaseException) -> None:
        future = self._flights.pop(key, None)
        if future is not None and not future.done():
            future.set_exception(exc)
            # Followers may all have detached; keep the loop from warning.
            future.exception()

    def in_flight(self) -> int:
        return sum(1 for future in self._flights.values() if not future.done())


class ResponseCache:
    def __init__(
        self,
        backend: CacheBackend | None = None,
        ttl_by_operation: dict[Operation, float] | None = None,
        default_ttl_s: float = 3_600.0,
        sweep_interval_s: float = 300.0,
        clock: Callable[[], float] = time,
    ):
        self._backend: CacheBackend = backend or InMemoryCacheBackend()
        self._ttl_by_operation = dict(ttl_by_operation) if ttl_by_operation else {}
        self._default_ttl_s = default_ttl_s
        self._clock = clock
        self._sweep_interval_s = sweep_interval_s
        self._last_sweep = clock()
        self._lock = threading.Lock()
        self.flights = SingleFlight()
        self._hits = 0
        self._misses = 0
        self._shared = 0

    def ttl_for(self, operation: Operation) -> float:
        return self._ttl_by_operation.get(operation, self._default_ttl_s)

    def get(self, fingerprint: str, count_miss: bool = True) -> CacheEntry | None:
        """Return a live entry, counting the hit.

        Callers that may still be served by an in-flight call pass
        ``count_miss=False`` and call ``record_miss`` once they know.
        """
        entry = self._backend.get(fingerprint)
        now = self._clock()
        if entry is None or entry.expired(now):
            if entry is not None:
                self._backend.delete(fingerprint)
            if count_miss:
                self.record_miss()
            return None
        entry = replace(entry, hit_count=entry.hit_count + 1)
        self._backend.put(entry)
        with self._lock:
            self._hits += 1
        inc_counter(
            "aic_cache_lookups_total", {"outcome": "hit", "operation": entry.operation.value}
        )
        return entry

    def put(
        self,
        fingerprint: str,
        operation: Operation,
        result: dict[str, Any],
        provider: str,
        ttl_s: float | None = None,
    ) -> CacheEntry:
        now = self._clock()
        ttl = self.ttl_for(operation) if ttl_s is None else ttl_s
        entry = CacheEntry(
            fingerprint=fingerprint,
            operation=operation,
            result=result,
            provider_used=provider,
            created_at=now,
            expires_at=now + max(ttl, 0.0),
        )
        self._backend.put(entry)
        if now - self._last_sweep >= self._sweep_interval_s:
            self.prune_expired()
        return entry

    def prune_expired(self) -> int:
        now = self._clock()
        self._last_sweep = now
        removed = self._backend.prune_expired(now)
        if removed:
            logger.info("cache_pruned", extra={"removed": removed})
        return removed

    def record_miss(self) -> None:
        with self._lock:
            self._misses += 1
        inc_counter("aic_cache_lookups_total", {"outcome": "miss"})

    def record_shared_hit(self, operation: Operation) -> None:
        """Count a single-flight follower served from the leader's call."""
        with self._lock:
            self._hits += 1
            self._shared += 1
        inc_counter("aic_cache_lookups_total", {"outcome": "shared", "operation": operation.value})

    def invalidate(self, pattern: str) -> int:
        pattern = pattern.strip() or "*"
        removed = 0
        for fingerprint, operation in self._backend.keys():
            key = f"{operation.value}:{fingerprint}"
            if fnmatchcase(key, pattern) or fnmatchcase(fingerprint, pattern):
                if self._backend.delete(fingerprint):
                    removed += 1
        logger.info("cache_invalidated", extra={"pattern": pattern, "removed": removed})
        inc_counter("aic_cache_invalidations_total", {}, float(removed))
        return removed

    def stats(self) -> dict[str, object]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._backend),
                "hits": self._hits,
                "misses": self._misses,
                "shared": self._shared,
                "in_flight": self.flights.in_flight(),
                "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
            }
