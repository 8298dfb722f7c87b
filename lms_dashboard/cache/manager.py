"""
Tiered cache manager: an unbounded session tier in front of a TTL-bounded
persistent tier.
"""
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from .core import CacheEntry, CacheTier, CorruptEntry, decode_session_value
from .stores import KeyValueStore, MemoryStore
from .ttl_policies import get_ttl_for_key

logger = logging.getLogger("cache.manager")


def get_cache_key(base_key: str, user_id: Any) -> str:
    """Namespace a feature key by user so two users never share an entry."""
    return f"{base_key}_{user_id}"


class CacheManager:
    """
    Cache orchestration with:
    - Per-key TTL derived from the key's data category
    - Lazy eviction on read (no background sweeper)
    - Corrupt entries treated as misses and dropped
    - A session tier consulted ahead of the TTL tier
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        session_store: Optional[KeyValueStore] = None,
        clock: Callable[[], float] = time.time,
        enabled: bool = True,
    ):
        """
        Initialize the cache manager.

        Args:
            store: Persistent store for the TTL tier
            session_store: Store for the per-session tier
            clock: Seconds since the epoch (injectable for expiry tests)
            enabled: When False every read misses and writes are skipped
        """
        self._store = store if store is not None else MemoryStore()
        self._session = session_store if session_store is not None else MemoryStore()
        self._clock = clock
        self.enabled = enabled

        self._stats_lock = threading.Lock()
        self._stats = {
            "hits": 0,
            "session_hits": 0,
            "misses": 0,
            "expired": 0,
            "corrupt": 0,
            "writes": 0,
            "write_errors": 0,
        }

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _count(self, stat: str) -> None:
        with self._stats_lock:
            self._stats[stat] += 1

    # ----- TTL tier -----

    def get_cached_data(self, key: str, ttl: Optional[int] = None) -> Optional[Any]:
        """
        Return the payload at key if present and younger than its TTL.

        Args:
            key: Namespaced cache key
            ttl: TTL override in seconds; defaults to the key's category TTL

        Returns:
            The cached payload, or None on miss, expiry or corruption
        """
        if not self.enabled:
            return None

        try:
            raw = self._store.get(key)
        except Exception as e:
            logger.error(f"Error reading cache for {key}: {e}")
            self._count("misses")
            return None

        if raw is None:
            self._count("misses")
            return None

        try:
            entry = CacheEntry.loads(raw)
        except CorruptEntry as e:
            logger.warning(f"Dropping corrupt cache entry {key}: {e}")
            self._count("corrupt")
            self._safe_remove(self._store, key)
            return None

        ttl_ms = get_ttl_for_key(key, ttl) * 1000
        now_ms = self._now_ms()
        if entry.is_valid(now_ms, ttl_ms):
            logger.debug(f"CACHE HIT: {key} [age={entry.age_ms(now_ms) / 1000:.1f}s]")
            self._count("hits")
            return entry.data

        logger.info(f"CACHE EXPIRED: {key} [age={entry.age_ms(now_ms) / 1000:.1f}s]")
        self._count("expired")
        self._safe_remove(self._store, key)
        return None

    def set_cached_data(self, key: str, payload: Any) -> bool:
        """
        Persist payload at key stamped with the current time.

        Returns:
            True if the entry was written
        """
        if not self.enabled:
            return False
        try:
            raw = CacheEntry(data=payload, written_at_ms=self._now_ms()).dumps()
            self._store.set(key, raw)
        except Exception as e:
            logger.error(f"Error caching data for {key}: {e}")
            self._count("write_errors")
            return False
        self._count("writes")
        logger.debug(f"Cached data for {key}")
        return True

    # ----- session tier -----

    def get_session_data(self, key: str) -> Optional[Any]:
        """Payload from the session tier; it never expires within a visit."""
        try:
            return decode_session_value(self._session.get(key))
        except CorruptEntry:
            logger.warning(f"Invalid data in session store for {key}")
            self._count("corrupt")
            self._safe_remove(self._session, key)
            return None
        except Exception as e:
            logger.error(f"Error reading session store for {key}: {e}")
            return None

    def set_session_data(self, key: str, payload: Any) -> bool:
        try:
            self._session.set(key, json.dumps(payload))
        except Exception as e:
            logger.error(f"Error writing session store for {key}: {e}")
            return False
        return True

    def get_tiered(
        self,
        session_key: str,
        key: str,
        ttl: Optional[int] = None,
    ) -> Tuple[Optional[Any], Optional[CacheTier]]:
        """
        Look up the session tier first, then the TTL tier.

        Returns:
            (payload, tier) or (None, None) when the caller must go to network
        """
        data = self.get_session_data(session_key)
        if data is not None:
            self._count("session_hits")
            return data, CacheTier.SESSION

        data = self.get_cached_data(key, ttl)
        if data is not None:
            return data, CacheTier.TTL
        return None, None

    # ----- invalidation -----

    def invalidate(self, key: str) -> bool:
        """
        Remove a specific TTL-tier entry.

        Returns:
            True if an entry was found and removed
        """
        try:
            if self._store.get(key) is None:
                return False
        except Exception as e:
            logger.error(f"Error reading cache for {key}: {e}")
            return False
        self._safe_remove(self._store, key)
        logger.info(f"Invalidated cache: {key}")
        return True

    def clear_user(self, user_id: Any) -> int:
        """
        Remove every TTL-tier entry namespaced to a user.

        Returns:
            Number of entries removed
        """
        suffix = f"_{user_id}"
        removed = 0
        for key in self._store.keys():
            if key.endswith(suffix):
                self._safe_remove(self._store, key)
                removed += 1
        if removed:
            logger.info(f"Cleared {removed} cache entries for user {user_id}")
        return removed

    def clear(self) -> int:
        """
        Clear both tiers.

        Returns:
            Number of TTL-tier entries cleared
        """
        keys = self._store.keys()
        for key in keys:
            self._safe_remove(self._store, key)
        for key in self._session.keys():
            self._safe_remove(self._session, key)
        logger.info(f"Cleared {len(keys)} cache entries")
        return len(keys)

    def _safe_remove(self, store: KeyValueStore, key: str) -> None:
        try:
            store.remove(key)
        except Exception as e:
            logger.error(f"Error removing cache entry {key}: {e}")

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._stats_lock:
            stats = dict(self._stats)
        lookups = stats["hits"] + stats["misses"] + stats["expired"] + stats["corrupt"]
        stats["hit_rate_percent"] = round(stats["hits"] / lookups * 100, 1) if lookups else 0
        try:
            stats["entries"] = len(self._store.keys())
        except Exception:
            stats["entries"] = None
        stats["enabled"] = self.enabled
        return stats
