"""
Fingerprinted TTL + LRU cache for search results and generated answers.
"""

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """A cached payload. Visible only while ``now - created_at < ttl``."""

    key: str
    payload: Any
    created_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl

    def to_dict(self) -> Dict[str, Any]:
        """Wire format shared with TTL-capable external stores."""
        return {
            "key": self.key,
            "payload": self.payload,
            "createdAt": self.created_at,
            "ttl": self.ttl,
        }


class CacheService:
    """
    Bounded cache keyed by query fingerprint.

    - Entries expire ``ttl_seconds`` after they were written; reads refresh
      recency but never extend the TTL.
    - At most ``capacity`` live entries; expired entries go first, then the
      least recently used.
    - ``get_or_compute`` runs at most one computation per fingerprint at a
      time, so identical concurrent requests share a single result.

    ``None`` is reserved as the miss marker and is never stored.
    """

    def __init__(
        self,
        capacity: int = 1000,
        ttl_seconds: float = 300.0,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self.name = name
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._inflight: Dict[str, List[Any]] = {}  # key -> [asyncio.Lock, refcount]
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        """
        Look up a fingerprint.

        Args:
            key: Cache fingerprint

        Returns:
            The payload, or None on miss/expiry
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return entry.payload

    def set(self, key: str, payload: Any, ttl: Optional[float] = None) -> None:
        """
        Store a payload under a fingerprint.

        Args:
            key: Cache fingerprint
            payload: Value to cache (must not be None)
            ttl: Optional per-entry TTL override in seconds
        """
        if payload is None:
            raise ValueError("None payloads cannot be cached")

        entry = CacheEntry(
            key=key,
            payload=payload,
            created_at=self._clock(),
            ttl=self.ttl_seconds if ttl is None else ttl,
        )

        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            self._evict_locked()

    def size(self) -> int:
        """Number of live (unexpired) entries."""
        with self._lock:
            self._purge_expired_locked()
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size(),
            "capacity": self.capacity,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
        }

    async def get_or_compute(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
    ) -> Tuple[Any, bool]:
        """
        Return the cached payload or compute, cache and return it.

        Concurrent callers for the same key wait on a per-key lock, so the
        factory runs once per fingerprint within the TTL window.

        Args:
            key: Cache fingerprint
            factory: Coroutine function producing the payload

        Returns:
            (payload, cache_hit)
        """
        cached = self.get(key)
        if cached is not None:
            return cached, True

        lock = self._acquire_key_lock(key)
        try:
            async with lock:
                cached = self.get(key)
                if cached is not None:
                    return cached, True

                payload = await factory()
                if payload is not None:
                    self.set(key, payload)
                return payload, False
        finally:
            self._release_key_lock(key)

    # ------------------------------------------------------------
    # Internals (callers hold self._lock)
    # ------------------------------------------------------------

    def _purge_expired_locked(self) -> None:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]

    def _evict_locked(self) -> None:
        if len(self._entries) <= self.capacity:
            return
        self._purge_expired_locked()
        while len(self._entries) > self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"[{self.name}] evicted {evicted}")

    def _acquire_key_lock(self, key: str) -> asyncio.Lock:
        with self._lock:
            slot = self._inflight.get(key)
            if slot is None:
                slot = [asyncio.Lock(), 0]
                self._inflight[key] = slot
            slot[1] += 1
            return slot[0]

    def _release_key_lock(self, key: str) -> None:
        with self._lock:
            slot = self._inflight.get(key)
            if slot is None:
                return
            slot[1] -= 1
            if slot[1] <= 0:
                del self._inflight[key]
