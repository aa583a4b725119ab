"""
Two-tier TTL cache for catalog reads.

This module implements a read-through cache with an in-process tier (a plain
dict, fastest) in front of a durable tier (see stores.py) that survives
process restarts.

Entries are grouped by cache class, each class carrying its own time-to-live.
Expiry is checked on read: an expired entry is never returned by get(), but
both tiers keep it as the last-known-good value for degraded reads until it is
invalidated or swept. Payloads are copied in and out, so callers never share
state with the cache.
"""
import copy
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Union

from .stores import DurableStore

logger = logging.getLogger(__name__)


class CacheClass(str, Enum):
    """Resource classes with their own TTL policy."""
    FACTORY = "factory"
    TAG = "tag"
    PRODUCT = "product"
    IMAGE = "image"


# Seconds an entry stays servable, per class
DEFAULT_TTLS: Dict[CacheClass, float] = {
    CacheClass.FACTORY: 30 * 60,
    CacheClass.TAG: 60 * 60,
    CacheClass.PRODUCT: 15 * 60,
    CacheClass.IMAGE: 2 * 60 * 60,
}

# Durable entries older than TTL * factor are removed by sweep_expired()
STALE_RETENTION_FACTOR = 24

StoreErrorHook = Callable[[str, str, Exception], None]


@dataclass
class CacheEntry:
    """A cached payload and the time it was written."""
    key: str
    payload: Any
    cache_class: CacheClass
    written_at: float

    def age(self, now: float) -> float:
        return now - self.written_at


def _log_store_error(operation: str, key: str, error: Exception) -> None:
    logger.warning(f"Durable cache {operation} failed for {key}: {error}")


class CacheStore:
    """
    Two-tier cache with per-class TTLs.

    Features:
    - In-process tier consulted first, durable tier second
    - Durable hits are promoted into the in-process tier
    - Durable-tier errors are reported and treated as misses, never raised
    - Last-known-good lookup for degraded reads (get_stale)

    Usage:
        cache = CacheStore(JsonFileStore(Path("cache.json")))
        await cache.set("factories:1:20:createdAt:desc:abcd", page, "factory")
        page = await cache.get("factories:1:20:createdAt:desc:abcd", "factory")
    """

    def __init__(
        self,
        durable: DurableStore,
        ttls: Optional[Mapping[Union[CacheClass, str], float]] = None,
        clock: Callable[[], float] = time.time,
        on_store_error: Optional[StoreErrorHook] = None,
        stale_retention_factor: float = STALE_RETENTION_FACTOR,
    ):
        """
        Initialize the cache.

        Args:
            durable: Durable store used as the persistent tier
            ttls: Policy table class -> TTL seconds (defaults to DEFAULT_TTLS)
            clock: Returns the current time in epoch seconds
            on_store_error: Called as (operation, key, error) on durable failures
            stale_retention_factor: Multiple of TTL kept as last-known-good
        """
        self.durable = durable
        policy = DEFAULT_TTLS if ttls is None else ttls
        self.ttls: Dict[CacheClass, float] = {CacheClass(c): float(t) for c, t in policy.items()}
        self._clock = clock
        self._on_store_error = on_store_error or _log_store_error
        self.stale_retention_factor = stale_retention_factor
        self._memory: Dict[tuple, CacheEntry] = {}

    @staticmethod
    def compute_hash(data: Any) -> str:
        """
        Compute SHA-256 hash of JSON-serializable data.

        Args:
            data: Any JSON-serializable data

        Returns:
            First 16 characters of hex-encoded SHA-256 hash
        """
        json_str = json.dumps(data, sort_keys=True, ensure_ascii=False, default=str)
        return hashlib.sha256(json_str.encode()).hexdigest()[:16]

    def ttl(self, cache_class: Union[CacheClass, str]) -> float:
        """
        Get the TTL for a class.

        Raises:
            ValueError: If the class is unknown or has no policy entry
        """
        cache_class = CacheClass(cache_class)
        if cache_class not in self.ttls:
            raise ValueError(f"No TTL policy for cache class '{cache_class.value}'")
        return self.ttls[cache_class]

    def _report(self, operation: str, key: str, error: Exception) -> None:
        self._on_store_error(operation, key, error)

    async def _durable_get(self, cache_class: CacheClass, key: str) -> Optional[tuple]:
        try:
            return await self.durable.get(cache_class.value, key)
        except Exception as e:
            self._report("get", key, e)
            return None

    async def get(self, key: str, cache_class: Union[CacheClass, str]) -> Optional[Any]:
        """
        Get a fresh cached payload.

        Args:
            key: Cache key
            cache_class: Class whose TTL applies

        Returns:
            Cached payload, or None if absent or expired in both tiers
        """
        cache_class = CacheClass(cache_class)
        ttl = self.ttl(cache_class)
        now = self._clock()

        entry = self._memory.get((cache_class, key))
        if entry is not None:
            if entry.age(now) < ttl:
                logger.debug(f"Cache hit (memory): {key}")
                return copy.deepcopy(entry.payload)
            # Expired entries stay as last-known-good until sweep_expired()

        stored = await self._durable_get(cache_class, key)
        if stored is not None:
            value, written_at = stored
            if now - written_at < ttl:
                # Promote with the original timestamp so expiry stays aligned
                self._memory[(cache_class, key)] = CacheEntry(key, value, cache_class, written_at)
                logger.debug(f"Cache hit (durable): {key}")
                return copy.deepcopy(value)

        logger.debug(f"Cache miss: {key}")
        return None

    async def get_stale(self, key: str, cache_class: Union[CacheClass, str]) -> Optional[CacheEntry]:
        """
        Get the last-known-good entry regardless of age.

        Used for graceful degradation when the remote store is unavailable.

        Returns:
            CacheEntry (possibly expired) or None if never cached
        """
        cache_class = CacheClass(cache_class)
        entry = self._memory.get((cache_class, key))
        if entry is not None:
            return CacheEntry(key, copy.deepcopy(entry.payload), cache_class, entry.written_at)

        stored = await self._durable_get(cache_class, key)
        if stored is None:
            return None
        value, written_at = stored
        return CacheEntry(key, copy.deepcopy(value), cache_class, written_at)

    async def set(self, key: str, payload: Any, cache_class: Union[CacheClass, str]) -> None:
        """
        Store a payload in both tiers with the current timestamp.

        Args:
            key: Cache key
            payload: JSON-serializable payload
            cache_class: Class whose TTL applies
        """
        cache_class = CacheClass(cache_class)
        self.ttl(cache_class)
        now = self._clock()
        # Both tiers hold a private copy; callers may mutate what they passed in
        payload = copy.deepcopy(payload)
        self._memory[(cache_class, key)] = CacheEntry(key, payload, cache_class, now)

        try:
            await self.durable.put(cache_class.value, key, payload, now)
        except Exception as e:
            self._report("put", key, e)

    async def invalidate(self, key: str, cache_class: Union[CacheClass, str]) -> None:
        """Remove a key from both tiers."""
        cache_class = CacheClass(cache_class)
        self._memory.pop((cache_class, key), None)

        try:
            await self.durable.delete(cache_class.value, key)
        except Exception as e:
            self._report("delete", key, e)

    async def invalidate_class(self, cache_class: Union[CacheClass, str]) -> int:
        """
        Remove every entry of a class from both tiers.

        Returns:
            Number of in-process entries dropped
        """
        cache_class = CacheClass(cache_class)
        keys = [k for k in self._memory if k[0] == cache_class]
        for k in keys:
            del self._memory[k]

        try:
            await self.durable.clear(cache_class.value)
        except Exception as e:
            self._report("clear", f"{cache_class.value}:*", e)

        logger.info(f"Invalidated cache class {cache_class.value} ({len(keys)} in-process entries)")
        return len(keys)

    async def clear_all(self) -> None:
        """Empty both tiers for every class."""
        self._memory.clear()
        for cache_class in CacheClass:
            try:
                await self.durable.clear(cache_class.value)
            except Exception as e:
                self._report("clear", f"{cache_class.value}:*", e)
        logger.info("Cache cleared")

    async def sweep_expired(self) -> int:
        """
        Remove expired entries.

        In-process entries are dropped once they have expired. Durable entries
        are kept as last-known-good data until they are older than
        TTL * stale_retention_factor.

        Returns:
            Total number of entries removed from both tiers
        """
        now = self._clock()
        removed = 0

        for k, entry in list(self._memory.items()):
            if entry.age(now) >= self.ttls.get(entry.cache_class, 0):
                del self._memory[k]
                removed += 1

        for cache_class, ttl in self.ttls.items():
            cutoff = now - ttl * self.stale_retention_factor
            try:
                removed += await self.durable.purge(cache_class.value, cutoff)
            except Exception as e:
                self._report("purge", f"{cache_class.value}:*", e)

        if removed:
            logger.info(f"Swept {removed} expired cache entries")
        return removed

    def stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dict with in-process entry count, keys and the TTL policy
        """
        return {
            "memory_entries": len(self._memory),
            "memory_keys": sorted(entry.key for entry in self._memory.values()),
            "ttls": {c.value: t for c, t in self.ttls.items()},
        }
